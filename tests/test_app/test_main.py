"""Tests for the command-line entry point and the scheduler tick."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.main import COMMANDS, build_parser, cmd_delete_bot, cmd_save_bot, cmd_schedule, run_scheduler_tick
from conftest import make_bot
from services.bot_service import BotService
from services.notification_service import EventType
from utils.helpers import MarketDataError, ValidationError


def make_context(settings, prices=None):
    return SimpleNamespace(
        settings=settings,
        price_publisher=SimpleNamespace(publish_once=prices or AsyncMock(return_value='snapshot')),
        bot_recorder=SimpleNamespace(run=AsyncMock(return_value='bots')),
        portfolio_recorder=SimpleNamespace(run=AsyncMock(return_value='portfolios')),
    )


class TestParser:
    def test_every_subcommand_has_a_handler(self):
        parser = build_parser()
        choices = parser._subparsers._group_actions[0].choices
        assert set(choices) == set(COMMANDS)

    def test_run_backtest_arguments(self):
        args = build_parser().parse_args(['run-backtest', 'user-1', 'bot-1', '--skip-wait'])
        assert (args.command, args.sub, args.bot_id, args.skip_wait) == ('run-backtest', 'user-1', 'bot-1', True)

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestScheduler:
    def test_tick_runs_steps_in_order(self, settings):
        context = make_context(settings)
        results = asyncio.run(run_scheduler_tick(context))
        assert results == {'prices': 'snapshot', 'bots': 'bots', 'portfolios': 'portfolios'}

    def test_failed_step_does_not_stop_the_tick(self, settings):
        context = make_context(settings, prices=AsyncMock(side_effect=MarketDataError('down')))

        results = asyncio.run(run_scheduler_tick(context))

        assert results['prices'] is None
        assert results['bots'] == 'bots'
        context.portfolio_recorder.run.assert_awaited_once()

    def test_schedule_stops_after_max_ticks(self, settings):
        context = make_context(settings)
        args = build_parser().parse_args(['schedule', '--max-ticks', '1'])

        assert asyncio.run(cmd_schedule(context, args)) == {'ticks': 1}
        context.bot_recorder.run.assert_awaited_once()


class TestBotCommands:
    def test_save_bot_reads_record_from_file(self, tmp_path, store, publisher, settings, price_rules):
        path = tmp_path / 'bot.json'
        bot = make_bot(buy_query=price_rules[0], sell_query=price_rules[1])
        path.write_text(json.dumps(bot.to_record()), encoding='utf-8')
        context = SimpleNamespace(bot_service=BotService(store, publisher, settings))
        args = build_parser().parse_args(['save-bot', str(path)])

        result = asyncio.run(cmd_save_bot(context, args))

        assert result['botId'] == 'bot-1'
        assert store.count('bots') == 1
        assert publisher.recent(EventType.BOT_CREATED)[0].detail['botId'] == 'bot-1'

    def test_save_bot_rejects_unreadable_file(self, tmp_path, store, publisher, settings):
        context = SimpleNamespace(bot_service=BotService(store, publisher, settings))
        args = build_parser().parse_args(['save-bot', str(tmp_path / 'missing.json')])

        with pytest.raises(ValidationError, match='Cannot read bot record'):
            asyncio.run(cmd_save_bot(context, args))

    def test_delete_bot_reports_missing_bot(self, store, publisher, settings):
        context = SimpleNamespace(bot_service=BotService(store, publisher, settings))
        args = build_parser().parse_args(['delete-bot', 'user-1', 'nope'])

        assert asyncio.run(cmd_delete_bot(context, args)) == {'sub': 'user-1', 'botId': 'nope', 'deleted': False}
        assert publisher.recent(EventType.BOT_DELETED) == []
