"""
Signal Engine Main Application
Точка входа: команды публикации цен, рекордеров, бэктестов, ботов и периодический планировщик
"""

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.config.settings import Settings, get_settings
from core.bot_executor import BotExecutor
from core.performance_recorder import BotPerformanceRecorder, PortfolioPerformanceRecorder
from core.price_publisher import PricePublisher
from data.database import SqlStore
from data.market_data import MarketDataClient
from data.report_store import LocalReportStore
from services.backtest_engine import BacktestEngine
from services.backtest_workflow import BacktestRequest, BacktestWorkflow
from services.bot_service import BotService
from services.notification_service import EventPublisher
from utils.helpers import ConfigurationError, SignalEngineError, ValidationError
from utils.logger import engine_logger, setup_from_settings, setup_logger


logger = setup_logger(__name__)


# ============================================================================
# КОМПОНЕНТЫ ПРИЛОЖЕНИЯ
# ============================================================================

@dataclass
class AppContext:
    """Собранные компоненты одного запуска"""
    settings: Settings
    store: SqlStore
    report_store: LocalReportStore
    publisher: EventPublisher
    market_data: MarketDataClient
    price_publisher: PricePublisher
    bot_recorder: BotPerformanceRecorder
    portfolio_recorder: PortfolioPerformanceRecorder
    workflow: BacktestWorkflow
    bot_executor: BotExecutor
    bot_service: BotService


async def startup_sequence(settings: Settings) -> AppContext:
    """
    Последовательность запуска всех компонентов
    """
    # 1. Хранилище
    logger.info("📦 Initializing store...")
    store = SqlStore(settings=settings)
    await store.init()

    # 2. Сервисы
    logger.info("🔧 Creating services...")
    publisher = EventPublisher()
    market_data = MarketDataClient(settings=settings)
    report_store = LocalReportStore(settings=settings)
    engine = BacktestEngine(store=store, settings=settings)

    context = AppContext(
        settings=settings,
        store=store,
        report_store=report_store,
        publisher=publisher,
        market_data=market_data,
        price_publisher=PricePublisher(market_data, store, publisher, settings=settings),
        bot_recorder=BotPerformanceRecorder(store, settings=settings),
        portfolio_recorder=PortfolioPerformanceRecorder(store, settings=settings),
        workflow=BacktestWorkflow(store, report_store, publisher, engine=engine, settings=settings),
        bot_executor=BotExecutor(store, publisher, settings=settings),
        bot_service=BotService(store, publisher, settings=settings),
    )

    # 3. Подписки на события
    logger.info("📡 Subscribing event handlers...")
    context.bot_executor.attach()
    context.workflow.attach()

    logger.info("✅ Components ready")
    return context


async def shutdown_sequence(context: AppContext) -> None:
    """
    Последовательность завершения работы
    """
    logger.info("🔌 Closing market data client...")
    await context.market_data.close()

    logger.info("📦 Closing store connections...")
    await context.store.close()


# ============================================================================
# КОМАНДЫ
# ============================================================================

async def cmd_publish_prices(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    snapshot = await context.price_publisher.publish_once()
    return snapshot.to_dict()


async def cmd_record_bots(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    result = await context.bot_recorder.run()
    return result.to_dict()


async def cmd_record_portfolios(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    result = await context.portfolio_recorder.run()
    return result.to_dict()


async def cmd_submit_backtest(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    metadata = await context.workflow.submit(args.sub, args.bot_id)
    return metadata.to_record()


async def cmd_run_backtest(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    """submit + полный прогон workflow в текущем процессе"""
    metadata = await context.workflow.submit(args.sub, args.bot_id)
    request = BacktestRequest.from_metadata(metadata)
    if args.skip_wait:
        request.wait_seconds = 0
    outcome = await context.workflow.run(request)
    return {
        'backtestId': outcome.backtest_id,
        'state': outcome.state.value,
        'reportKey': outcome.report_key,
        'errorMessage': outcome.error_message,
    }


async def cmd_save_bot(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    """Создание или обновление бота из JSON файла с записью бота"""
    try:
        record = json.loads(Path(args.path).read_text(encoding='utf-8'))
    except (OSError, ValueError) as e:
        raise ValidationError(f"Cannot read bot record from {args.path}: {e}")
    bot = await context.bot_service.save_bot(record)
    return bot.to_record()


async def cmd_delete_bot(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    deleted = await context.bot_service.delete_bot(args.sub, args.bot_id)
    return {'sub': args.sub, 'botId': args.bot_id, 'deleted': deleted}


async def run_scheduler_tick(context: AppContext) -> Dict[str, Any]:
    """
    Один тик планировщика: цены -> снапшоты ботов -> снапшоты портфелей

    Ошибка шага логируется; следующий тик повторит попытку.
    """
    results: Dict[str, Any] = {}
    steps: List[tuple] = [
        ('prices', context.price_publisher.publish_once),
        ('bots', context.bot_recorder.run),
        ('portfolios', context.portfolio_recorder.run),
    ]
    for name, step in steps:
        try:
            results[name] = await step()
        except SignalEngineError as e:
            logger.error(f"❌ Scheduler step '{name}' failed: {e}")
            results[name] = None
    return results


async def cmd_schedule(context: AppContext, args: argparse.Namespace) -> Dict[str, Any]:
    """Периодический запуск каждые RECORDER_INTERVAL_MINUTES"""
    interval = context.settings.RECORDER_INTERVAL_MINUTES * 60
    ticks = 0
    logger.info(f"🚀 Scheduler started, interval {interval}s")

    while args.max_ticks is None or ticks < args.max_ticks:
        await run_scheduler_tick(context)
        ticks += 1
        if args.max_ticks is not None and ticks >= args.max_ticks:
            break
        await asyncio.sleep(interval)

    return {'ticks': ticks}


CommandHandler = Callable[[AppContext, argparse.Namespace], Awaitable[Dict[str, Any]]]

COMMANDS: Dict[str, CommandHandler] = {
    'publish-prices': cmd_publish_prices,
    'record-bots': cmd_record_bots,
    'record-portfolios': cmd_record_portfolios,
    'submit-backtest': cmd_submit_backtest,
    'run-backtest': cmd_run_backtest,
    'schedule': cmd_schedule,
    'save-bot': cmd_save_bot,
    'delete-bot': cmd_delete_bot,
}


# ============================================================================
# CLI
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='signal-engine', description='Signal & performance accounting engine')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('publish-prices', help='Fetch market data and publish an indicator snapshot')
    subparsers.add_parser('record-bots', help='Record performance snapshots for active bots')
    subparsers.add_parser('record-portfolios', help='Record aggregated portfolio snapshots')

    for name in ('submit-backtest', 'run-backtest'):
        sub_parser = subparsers.add_parser(name, help=f'{name.replace("-", " ").capitalize()} for a bot')
        sub_parser.add_argument('sub', help='Owner (user) id')
        sub_parser.add_argument('bot_id', help='Bot id')
        if name == 'run-backtest':
            sub_parser.add_argument('--skip-wait', action='store_true', help='Do not wait before running')

    save_bot = subparsers.add_parser('save-bot', help='Create or update a bot from a JSON record')
    save_bot.add_argument('path', help='Path to the bot record JSON file')

    delete_bot = subparsers.add_parser('delete-bot', help='Delete a bot with its trades and snapshots')
    delete_bot.add_argument('sub', help='Owner (user) id')
    delete_bot.add_argument('bot_id', help='Bot id')

    schedule = subparsers.add_parser('schedule', help='Run prices and recorders periodically')
    schedule.add_argument('--max-ticks', type=int, default=None, help='Stop after N ticks')

    return parser


async def run_command(args: argparse.Namespace, settings: Optional[Settings] = None) -> Dict[str, Any]:
    settings = settings or get_settings()
    handler = COMMANDS[args.command]

    context = await startup_sequence(settings)
    try:
        return await handler(context, args)
    finally:
        await shutdown_sequence(context)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        return 2

    setup_from_settings(settings)
    settings.log_startup_config(logger)

    try:
        result = asyncio.run(run_command(args, settings))
    except KeyboardInterrupt:
        logger.info("📡 Interrupted, shutting down")
        return 130
    except SignalEngineError as e:
        logger.error(f"❌ Command '{args.command}' failed: {e}")
        return 1
    finally:
        engine_logger.shutdown()

    print(json.dumps(result, default=str, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
