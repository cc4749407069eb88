"""Tests for the backtest workflow state machine and orchestration."""

import asyncio
import random
import time
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config.settings import Settings
from conftest import make_bot
from data.models import BacktestMetadata, BacktestStatus
from data.report_store import MemoryReportStore, report_key
from services.backtest_engine import BacktestEngine
from services.backtest_workflow import (
    MAX_ERROR_MESSAGE_LENGTH, BacktestRequest, BacktestStateMachine, BacktestWorkflow, WorkflowState
)
from services.bot_service import BotService
from services.notification_service import EventType
from strategies.rules import parse_rule_group
from utils.helpers import BacktestError, BacktestValidationError, StoreError, to_iso


class Clock:
    """Часы, которые сдвигаются на секунду при каждом вызове"""

    def __init__(self, start):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


class BrokenDeleteReportStore(MemoryReportStore):
    async def delete(self, key):
        raise StoreError(f"cannot delete {key}")


@pytest.fixture
def wf_settings():
    return Settings(
        _env_file=None,
        STORE_PAGE_SIZE=2,
        BACKTEST_WINDOW_DAYS=3,
        BACKTEST_MIN_HISTORY_DAYS=1,
        BACKTEST_MIN_WAIT_SECONDS=1,
        BACKTEST_MAX_WAIT_SECONDS=2,
        BACKTEST_WORKFLOW_TIMEOUT=30.0,
        BACKTEST_STAGE_RETRIES=1,
        BACKTEST_MAX_RESULTS_PER_BOT=2,
        BACKTEST_INDICATOR_WINDOW=20,
    )


@pytest.fixture
def waits():
    return []


@pytest.fixture
def make_workflow(store, report_store, publisher, wf_settings, waits, now):
    def factory(**overrides):
        async def fake_sleep(seconds):
            waits.append(seconds)

        kwargs = dict(
            store=store,
            report_store=report_store,
            publisher=publisher,
            settings=wf_settings,
            sleep=fake_sleep,
            rng=random.Random(7),
            clock=Clock(now),
        )
        kwargs.update(overrides)
        workflow = BacktestWorkflow(**kwargs)
        workflow.retry_delay = 0
        return workflow

    return factory


async def seed(store, now, bot, history_days=3):
    await store.put('bots', bot.to_record())
    start = now - timedelta(days=history_days)
    for step in range(history_days * 12 + 1):
        await store.put('price_history', {
            'pair': bot.pair,
            'timestamp': to_iso(start + timedelta(hours=2 * step)),
            'price': 100.0 if step % 2 == 0 else 120.0,
            'volume_24h': 50.0,
            'price_change_pct': 0.5,
        })


async def load_metadata(store, sub, backtest_id):
    record = await store.get('backtests', {'sub': sub, 'backtestId': backtest_id})
    return BacktestMetadata.from_record(record) if record is not None else None


def seeded_bot(**overrides):
    data = dict(
        buy_query=parse_rule_group({'combinator': 'and', 'rules': [{'field': 'price', 'operator': '<', 'value': '105'}]}),
        sell_query=parse_rule_group({'combinator': 'and', 'rules': [{'field': 'price', 'operator': '>', 'value': '110'}]}),
    )
    data.update(overrides)
    return make_bot(**data)


class TestStateMachine:
    def test_happy_path_transitions(self):
        machine = BacktestStateMachine('bt-1')
        for state in (WorkflowState.VALIDATING, WorkflowState.WAITING, WorkflowState.RUNNING_ENGINE,
                      WorkflowState.WRITING_REPORT, WorkflowState.COMPLETED):
            machine.transition(state)

        assert machine.is_terminal
        assert [h['to'] for h in machine.to_dict()['history']][-1] == 'completed'

    def test_illegal_transition(self):
        machine = BacktestStateMachine('bt-1')
        with pytest.raises(BacktestError):
            machine.transition(WorkflowState.COMPLETED)

    def test_terminal_states_are_final(self):
        machine = BacktestStateMachine('bt-1')
        machine.transition(WorkflowState.FAILED, 'boom')
        with pytest.raises(BacktestError):
            machine.transition(WorkflowState.VALIDATING)
        assert machine.history[0]['reason'] == 'boom'


class TestSubmit:
    def test_creates_pending_record(self, make_workflow, store, now):
        workflow = make_workflow()

        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            return metadata, await load_metadata(store, 'user-1', metadata.backtest_id)

        metadata, stored = asyncio.run(scenario())

        assert stored.status == BacktestStatus.PENDING
        assert 1 <= stored.wait_seconds <= 2
        assert stored.window_end == to_iso(now)
        assert stored.window_start == to_iso(now - timedelta(days=3))
        assert stored.bot_config_snapshot['botId'] == 'bot-1'
        assert workflow.stats['submitted'] == 1

    def test_unknown_bot(self, make_workflow):
        with pytest.raises(BacktestValidationError):
            asyncio.run(make_workflow().submit('user-1', 'missing'))

    def test_second_submit_while_in_flight(self, make_workflow, store, now):
        workflow = make_workflow()

        async def scenario():
            await seed(store, now, seeded_bot())
            await workflow.submit('user-1', 'bot-1', now)
            await workflow.submit('user-1', 'bot-1', now)

        with pytest.raises(BacktestValidationError, match='already in progress'):
            asyncio.run(scenario())

    def test_insufficient_history(self, make_workflow, store, now):
        workflow = make_workflow()

        async def scenario():
            await store.put('bots', seeded_bot().to_record())
            await store.put('price_history', {'pair': 'BTC/USDT', 'timestamp': to_iso(now - timedelta(hours=2)),
                                              'price': 100.0})
            await workflow.submit('user-1', 'bot-1', now)

        with pytest.raises(BacktestValidationError, match='Insufficient price history'):
            asyncio.run(scenario())


class TestRun:
    def test_happy_path(self, make_workflow, store, report_store, publisher, waits, now):
        completed = []
        publisher.subscribe(EventType.BACKTEST_COMPLETED, completed.append)
        workflow = make_workflow()

        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            outcome = await workflow.run(BacktestRequest.from_metadata(metadata))
            stored = await load_metadata(store, 'user-1', metadata.backtest_id)
            return metadata, outcome, stored, await workflow.get_report(stored)

        metadata, outcome, stored, report = asyncio.run(scenario())

        assert outcome.succeeded
        assert [h['to'] for h in outcome.history] == [
            'validating', 'waiting', 'running_engine', 'writing_report', 'completed',
        ]
        assert outcome.report_key == report_key('user-1', 'bot-1', metadata.backtest_id)
        assert waits == [metadata.wait_seconds]

        assert stored.status == BacktestStatus.COMPLETED
        assert stored.report_key == outcome.report_key
        assert stored.completed_at is not None
        assert stored.error_message is None

        assert report['backtestId'] == metadata.backtest_id
        assert report['summary']['totalTrades'] > 0
        assert report['sizingMode'] == 'default_1000'

        assert len(completed) == 1
        assert completed[0].detail['reportKey'] == outcome.report_key
        assert completed[0].detail['summary'] == report['summary']
        assert workflow.get_stats()['completed'] == 1

    def test_invalid_bot_fails_without_running_engine(self, make_workflow, store, publisher, now):
        engine = MagicMock()
        engine.run_from_store = AsyncMock()
        failed = []
        publisher.subscribe(EventType.BACKTEST_FAILED, failed.append)
        workflow = make_workflow(engine=engine)

        async def scenario():
            await seed(store, now, make_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            outcome = await workflow.run(BacktestRequest.from_metadata(metadata))
            return outcome, await load_metadata(store, 'user-1', metadata.backtest_id)

        outcome, stored = asyncio.run(scenario())

        assert outcome.state == WorkflowState.FAILED
        assert 'neither buy nor sell' in outcome.error_message
        engine.run_from_store.assert_not_awaited()
        assert stored.status == BacktestStatus.FAILED
        assert stored.error_message == outcome.error_message
        assert failed[0].detail['errorMessage'] == outcome.error_message

    def test_engine_error_is_truncated(self, make_workflow, store, now):
        engine = MagicMock()
        engine.run_from_store = AsyncMock(side_effect=BacktestError('x' * 800))
        workflow = make_workflow(engine=engine)

        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            outcome = await workflow.run(BacktestRequest.from_metadata(metadata))
            return outcome, await load_metadata(store, 'user-1', metadata.backtest_id)

        outcome, stored = asyncio.run(scenario())

        assert len(stored.error_message) == MAX_ERROR_MESSAGE_LENGTH
        assert stored.status == BacktestStatus.FAILED
        # Доменная ошибка не повторяется
        assert engine.run_from_store.await_count == 1
        assert [h['to'] for h in outcome.history][-1] == 'failed'

    def test_store_errors_are_retried(self, make_workflow, store, wf_settings, now):
        real_engine = BacktestEngine(store=store, settings=wf_settings)
        calls = []

        async def flaky_run(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise StoreError("temporarily unavailable")
            return await real_engine.run_from_store(*args, **kwargs)

        engine = MagicMock()
        engine.run_from_store = flaky_run
        workflow = make_workflow(engine=engine)

        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            return await workflow.run(BacktestRequest.from_metadata(metadata))

        outcome = asyncio.run(scenario())

        assert outcome.succeeded
        assert len(calls) == 2

    def test_timeout_fails_the_workflow(self, make_workflow, store, now):
        async def slow_sleep(seconds):
            await asyncio.sleep(10)

        workflow = make_workflow(sleep=slow_sleep)
        workflow.timeout = 0.05

        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            outcome = await workflow.run(BacktestRequest.from_metadata(metadata))
            return outcome, await load_metadata(store, 'user-1', metadata.backtest_id)

        outcome, stored = asyncio.run(scenario())

        assert outcome.state == WorkflowState.FAILED
        assert 'timeout' in outcome.error_message
        assert stored.status == BacktestStatus.FAILED
        assert workflow.stats['timeouts'] == 1

    def test_timeout_interrupts_a_slow_engine_stage(self, make_workflow, store, wf_settings, now):
        engine = BacktestEngine(store=store, settings=wf_settings)

        def slow_run(*args, **kwargs):
            time.sleep(0.5)
            raise AssertionError('replay should have been abandoned')

        engine.run = slow_run
        workflow = make_workflow(engine=engine)

        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            workflow.timeout = 0.1
            loop = asyncio.get_running_loop()
            started = loop.time()
            outcome = await workflow.run(BacktestRequest.from_metadata(metadata))
            return outcome, loop.time() - started

        outcome, elapsed = asyncio.run(scenario())

        assert outcome.state == WorkflowState.FAILED
        assert 'run_engine' in outcome.error_message
        assert elapsed < 0.4
        assert workflow.stats['timeouts'] == 1

    def test_missing_metadata_record_is_created_as_failed(self, make_workflow, store, now):
        workflow = make_workflow()
        request = BacktestRequest(
            sub='user-1', bot_id='bot-1', backtest_id='ghost', wait_seconds=1,
            window_start=to_iso(now - timedelta(days=3)), window_end=to_iso(now),
        )

        async def scenario():
            await seed(store, now, seeded_bot())
            outcome = await workflow.run(request)
            return outcome, await load_metadata(store, 'user-1', 'ghost')

        outcome, stored = asyncio.run(scenario())

        assert not outcome.succeeded
        assert stored.status == BacktestStatus.FAILED
        assert 'not found' in stored.error_message


class TestResultRetention:
    def run_three(self, workflow, store, now):
        async def scenario():
            await seed(store, now, seeded_bot())
            ids = []
            for _ in range(3):
                metadata = await workflow.submit('user-1', 'bot-1', now)
                outcome = await workflow.run(BacktestRequest.from_metadata(metadata))
                assert outcome.succeeded
                ids.append(metadata.backtest_id)
            remaining = await store.query_all('backtests', 'user-1')
            return ids, remaining

        return asyncio.run(scenario())

    def test_oldest_result_is_evicted(self, make_workflow, store, report_store, now):
        workflow = make_workflow()

        ids, remaining = self.run_three(workflow, store, now)

        assert sorted(r['backtestId'] for r in remaining) == sorted(ids[1:])
        assert report_key('user-1', 'bot-1', ids[0]) not in report_store.objects
        assert report_key('user-1', 'bot-1', ids[2]) in report_store.objects
        assert workflow.stats['reports_evicted'] == 1

    def test_report_delete_failure_still_removes_record(self, make_workflow, store, now):
        broken = BrokenDeleteReportStore()
        workflow = make_workflow(report_store=broken)

        ids, remaining = self.run_three(workflow, store, now)

        assert ids[0] not in {r['backtestId'] for r in remaining}
        assert report_key('user-1', 'bot-1', ids[0]) in broken.objects


class TestQueries:
    def test_mark_config_changed(self, make_workflow, store, now):
        workflow = make_workflow()

        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            await workflow.run(BacktestRequest.from_metadata(metadata))
            first = await workflow.mark_config_changed('user-1', 'bot-1')
            second = await workflow.mark_config_changed('user-1', 'bot-1')
            return first, second, await load_metadata(store, 'user-1', metadata.backtest_id)

        first, second, stored = asyncio.run(scenario())

        assert (first, second) == (1, 0)
        assert stored.config_changed_since_test is True

    def test_get_report_without_key(self, make_workflow, now):
        metadata = BacktestMetadata(
            sub='user-1', backtest_id='bt', bot_id='bot-1', status=BacktestStatus.PENDING,
            bot_config_snapshot={}, tested_at=to_iso(now), window_start='', window_end='',
        )
        assert asyncio.run(make_workflow().get_report(metadata)) is None


class TestBotLifecycleEvents:
    def run_one(self, workflow, store, now):
        async def scenario():
            await seed(store, now, seeded_bot())
            metadata = await workflow.submit('user-1', 'bot-1', now)
            outcome = await workflow.run(BacktestRequest.from_metadata(metadata))
            assert outcome.succeeded
            return metadata.backtest_id

        return asyncio.run(scenario())

    def test_bot_update_marks_results_outdated(self, make_workflow, store, publisher, wf_settings, now):
        workflow = make_workflow()
        workflow.attach()
        backtest_id = self.run_one(workflow, store, now)

        async def scenario():
            record = await store.get('bots', {'sub': 'user-1', 'botId': 'bot-1'})
            record['cooldownMinutes'] = 5
            await BotService(store, publisher, wf_settings).save_bot(record, now)
            return await load_metadata(store, 'user-1', backtest_id)

        stored = asyncio.run(scenario())

        assert stored.config_changed_since_test is True
        assert publisher.recent(EventType.BOT_UPDATED)[0].status.value == 'delivered'

    def test_bot_delete_purges_results_and_reports(self, make_workflow, store, report_store, publisher,
                                                   wf_settings, now):
        workflow = make_workflow()
        workflow.attach()
        backtest_id = self.run_one(workflow, store, now)
        key = report_key('user-1', 'bot-1', backtest_id)
        assert key in report_store.objects

        deleted = asyncio.run(BotService(store, publisher, wf_settings).delete_bot('user-1', 'bot-1'))

        assert deleted is True
        assert store.count('backtests') == 0
        assert key not in report_store.objects

    def test_purge_ignores_other_bots(self, make_workflow, store, now):
        workflow = make_workflow()
        self.run_one(workflow, store, now)

        assert asyncio.run(workflow.purge_bot_results('user-1', 'bot-2')) == 0
        assert store.count('backtests') == 1
