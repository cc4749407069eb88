"""Tests for log formatting, masking, engine events and timing decorator."""

import asyncio
import json
import logging

import pytest

from utils.logger import (
    EVENTS_LOGGER, JSONFormatter, SensitiveDataFilter, log_engine_event, log_execution_time,
    mask_sensitive_data
)


TIMING_LOGGER = 'signal_engine.tests.timing'


class TestMasking:
    def test_dsn_password_is_masked(self):
        masked = mask_sensitive_data('connecting to postgresql://app:hunter2@db:5432/engine')
        assert 'hunter2' not in masked
        assert 'postgresql://app:***MASKED***@db:5432/engine' in masked

    def test_token_assignment_is_masked(self):
        assert mask_sensitive_data('token=abc123 sent') == 'token=***MASKED*** sent'

    def test_plain_message_untouched(self):
        assert mask_sensitive_data('bot b1 recorded') == 'bot b1 recorded'

    def test_filter_rewrites_record(self):
        record = logging.makeLogRecord({'msg': 'secret: s3cr3t', 'levelname': 'INFO'})
        assert SensitiveDataFilter().filter(record) is True
        assert record.msg == 'secret: ***MASKED***'


class TestJSONFormatter:
    def test_extra_fields_are_included(self):
        record = logging.makeLogRecord({
            'name': 'engine.events', 'msg': 'published', 'levelname': 'INFO', 'levelno': logging.INFO,
            'event_type': 'BacktestCompleted', 'subject': 'bot-1',
        })

        data = json.loads(JSONFormatter().format(record))

        assert data['message'] == 'published'
        assert data['logger'] == 'engine.events'
        assert data['event_type'] == 'BacktestCompleted'
        assert data['subject'] == 'bot-1'
        assert 'exception' not in data


class TestEngineEvents:
    def test_event_carries_type_and_subject(self, caplog):
        caplog.set_level(logging.INFO, logger=EVENTS_LOGGER)

        log_engine_event('IndicatorsUpdated', 'BTC/USDT', 'indicators ready', event_id='e-1')

        record = next(r for r in caplog.records if r.name == EVENTS_LOGGER)
        assert record.event_type == 'IndicatorsUpdated'
        assert record.subject == 'BTC/USDT'
        assert record.event_id == 'e-1'
        assert record.log_type == 'engine_event'


class TestExecutionTime:
    def test_sync_function_logs_duration(self, caplog):
        caplog.set_level(logging.DEBUG, logger=TIMING_LOGGER)

        @log_execution_time(TIMING_LOGGER)
        def add(a, b):
            return a + b

        assert add(2, 3) == 5
        assert add.__name__ == 'add'
        assert any('add executed in' in r.getMessage() for r in caplog.records)

    def test_async_failure_is_logged_and_reraised(self, caplog):
        caplog.set_level(logging.DEBUG, logger=TIMING_LOGGER)

        @log_execution_time(TIMING_LOGGER)
        async def explode():
            raise ValueError('boom')

        with pytest.raises(ValueError, match='boom'):
            asyncio.run(explode())

        errors = [r for r in caplog.records if r.levelno == logging.ERROR and r.name == TIMING_LOGGER]
        assert len(errors) == 1
        assert 'explode failed after' in errors[0].getMessage()
