"""
Signal Engine Performance Recorder
Периодические снапшоты P&L по ботам и агрегаты по портфелям пользователей
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from app.config.settings import Settings, get_settings
from core.accountant import compute_pnl
from data.models import PerformanceSnapshot, PortfolioSnapshot
from data.store import Item, Store
from strategies.bot_config import BotStatus
from utils.helpers import (
    Timer, get_current_utc_datetime, run_worker_pool, safe_float, to_iso, ttl_from
)
from utils.logger import setup_logger


logger = setup_logger(__name__)


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass
class RecorderResult:
    """Итог одного прогона рекордера"""
    subjects: int = 0
    attempted: int = 0
    written: int = 0
    failed: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _collect(result: RecorderResult, outcomes, subject_id) -> RecorderResult:
    for item, _, error in outcomes:
        result.attempted += 1
        if error is None:
            result.written += 1
        else:
            result.failed += 1
            result.failures[subject_id(item)] = str(error)
    return result


# ============================================================================
# BOT RECORDER
# ============================================================================

class BotPerformanceRecorder:
    """
    Снапшот P&L для каждого активного бота

    Ошибка по одному боту логируется и не останавливает остальных;
    каждый бот получает ровно одну попытку записи.
    """

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.logger = setup_logger(f"{__name__}.BotPerformanceRecorder")
        self.stats = {'runs': 0, 'snapshots_written': 0, 'snapshots_failed': 0}

    async def _load_active_bots(self) -> List[Item]:
        return await self.store.scan_all(
            'bots', predicate=lambda item: item.get('status') == BotStatus.ACTIVE.value
        )

    async def _latest_price(self, pair: str) -> float:
        """Последняя цена пары из price_history; 0 если истории нет"""
        page = await self.store.query('price_history', pair, ascending=False, limit=1)
        if not page.items:
            return 0.0
        return safe_float(page.items[0].get('price'))

    async def _record_bot(self, bot: Item, price: float, timestamp: str, ttl: int) -> PerformanceSnapshot:
        trades = await self.store.query_all('trades', bot['botId'], ascending=True)
        pnl = compute_pnl(trades, price)

        snapshot = PerformanceSnapshot(
            bot_id=bot['botId'],
            sub=bot.get('sub', ''),
            pair=bot.get('pair', ''),
            timestamp=timestamp,
            total_buys=pnl.total_buys,
            total_sells=pnl.total_sells,
            total_buy_value=pnl.total_buy_value,
            total_sell_value=pnl.total_sell_value,
            realised_pnl=pnl.realised_pnl,
            unrealised_pnl=pnl.unrealised_pnl,
            net_pnl=pnl.net_pnl,
            net_position=pnl.net_position,
            win_rate=pnl.win_rate,
            current_price=price,
            ttl=ttl,
        )
        await self.store.put('bot_performance', snapshot.to_record())
        return snapshot

    async def run(self, now: Optional[datetime] = None) -> RecorderResult:
        now = now or get_current_utc_datetime()
        self.stats['runs'] += 1

        bots = await self._load_active_bots()
        if not bots:
            self.logger.info("📊 No active bots found, skipping performance recording")
            return RecorderResult()

        self.logger.info(f"🔄 Computing performance for {len(bots)} active bots")
        timestamp = to_iso(now)
        ttl = ttl_from(now, self.settings.PERFORMANCE_TTL_DAYS)

        # Одна выборка цены на пару
        prices: Dict[str, float] = {}
        for pair in sorted({bot.get('pair', '') for bot in bots}):
            prices[pair] = await self._latest_price(pair)

        async def worker(bot: Item) -> PerformanceSnapshot:
            return await self._record_bot(bot, prices.get(bot.get('pair', ''), 0.0), timestamp, ttl)

        with Timer("Bot performance recording"):
            outcomes = await run_worker_pool(
                bots, worker, self.settings.RECORDER_CONCURRENCY, name="bot-recorder"
            )

        result = _collect(RecorderResult(subjects=len(bots)), outcomes, lambda bot: bot['botId'])
        self.stats['snapshots_written'] += result.written
        self.stats['snapshots_failed'] += result.failed

        if result.failed:
            self.logger.warning(f"⚠️ Performance recording finished with {result.failed} failures")
        self.logger.info(f"✅ Recorded performance snapshots for {result.written}/{len(bots)} bots")
        return result


# ============================================================================
# PORTFOLIO RECORDER
# ============================================================================

class PortfolioPerformanceRecorder:
    """
    Агрегат по пользователю: сумма последних снапшотов его ботов

    Снапшот бота учитывается, только если он моложе PORTFOLIO_LOOKBACK_MINUTES.
    pnl24h - изменение от самого старого снапшота портфеля за 24 часа.
    """

    def __init__(self, store: Store, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.logger = setup_logger(f"{__name__}.PortfolioPerformanceRecorder")
        self.stats = {'runs': 0, 'snapshots_written': 0, 'snapshots_failed': 0}

    async def _aggregate(self, sub: str, now: datetime) -> Dict[str, Any]:
        since = to_iso(now - timedelta(minutes=self.settings.PORTFOLIO_LOOKBACK_MINUTES))
        bots = await self.store.query_all('bots', sub)

        totals = {'activeBots': 0, 'totalNetPnl': 0.0, 'totalRealisedPnl': 0.0, 'totalUnrealisedPnl': 0.0}
        for bot in bots:
            page = await self.store.query('bot_performance', bot['botId'], start=since,
                                          ascending=False, limit=1)
            if not page.items:
                continue
            latest = page.items[0]
            totals['activeBots'] += 1
            totals['totalNetPnl'] += safe_float(latest.get('netPnl'))
            totals['totalRealisedPnl'] += safe_float(latest.get('realisedPnl'))
            totals['totalUnrealisedPnl'] += safe_float(latest.get('unrealisedPnl'))
        return totals

    async def _pnl_24h(self, sub: str, current_net_pnl: float, now: datetime) -> float:
        since = to_iso(now - timedelta(hours=24))
        page = await self.store.query('portfolio_performance', sub, start=since, ascending=True, limit=1)
        if not page.items:
            return current_net_pnl
        return current_net_pnl - safe_float(page.items[0].get('totalNetPnl'))

    async def _record_user(self, sub: str, now: datetime, timestamp: str, ttl: int) -> PortfolioSnapshot:
        totals = await self._aggregate(sub, now)
        pnl_24h = await self._pnl_24h(sub, totals['totalNetPnl'], now)

        snapshot = PortfolioSnapshot(
            sub=sub,
            timestamp=timestamp,
            active_bots=totals['activeBots'],
            total_net_pnl=totals['totalNetPnl'],
            total_realised_pnl=totals['totalRealisedPnl'],
            total_unrealised_pnl=totals['totalUnrealisedPnl'],
            pnl_24h=pnl_24h,
            ttl=ttl,
        )
        await self.store.put('portfolio_performance', snapshot.to_record())
        return snapshot

    async def run(self, now: Optional[datetime] = None) -> RecorderResult:
        now = now or get_current_utc_datetime()
        self.stats['runs'] += 1

        users = [item['sub'] for item in await self.store.scan_all('portfolios') if item.get('sub')]
        if not users:
            self.logger.info("📊 No registered users found, skipping portfolio recording")
            return RecorderResult()

        self.logger.info(f"🔄 Computing portfolio performance for {len(users)} users")
        timestamp = to_iso(now)
        ttl = ttl_from(now, self.settings.PERFORMANCE_TTL_DAYS)

        async def worker(sub: str) -> PortfolioSnapshot:
            return await self._record_user(sub, now, timestamp, ttl)

        with Timer("Portfolio performance recording"):
            outcomes = await run_worker_pool(
                users, worker, self.settings.RECORDER_CONCURRENCY, name="portfolio-recorder"
            )

        result = _collect(RecorderResult(subjects=len(users)), outcomes, lambda sub: sub)
        self.stats['snapshots_written'] += result.written
        self.stats['snapshots_failed'] += result.failed

        if result.failed:
            self.logger.warning(f"⚠️ Portfolio recording finished with {result.failed} failures")
        self.logger.info(f"✅ Recorded portfolio snapshots for {result.written}/{len(users)} users")
        return result
