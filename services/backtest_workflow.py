"""
Signal Engine Backtest Workflow
Конечный автомат бэктеста: validate -> wait -> run_engine -> write_report -> completed | failed

Переходы:
    PENDING         -> VALIDATING
    VALIDATING      -> WAITING
    WAITING         -> RUNNING_ENGINE
    RUNNING_ENGINE  -> WRITING_REPORT
    WRITING_REPORT  -> COMPLETED
    ANY (не терминальное) -> FAILED
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from app.config.settings import Settings, get_settings
from data.models import BacktestMetadata, BacktestReport, BacktestStatus, generate_uuid
from data.report_store import ReportStore, report_key
from data.store import Store
from services.backtest_engine import BacktestEngine
from services.notification_service import Event, EventPublisher, EventType
from strategies.bot_config import BotConfig
from utils.helpers import (
    BacktestError, BacktestValidationError, NetworkError, StoreError, ValidationError,
    WorkflowTimeoutError, clamp, format_duration, get_current_utc_datetime, parse_iso,
    retry_async, to_iso
)
from utils.logger import setup_logger


# ============================================================================
# CONSTANTS AND ENUMS
# ============================================================================

logger = setup_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500
STAGE_RETRY_DELAY = 1.0

# Инфраструктурные ошибки - повторяются; доменные - сразу в FAILED
RETRYABLE_ERRORS = (StoreError, NetworkError)


class WorkflowState(str, Enum):
    """Состояния workflow бэктеста"""
    PENDING = "pending"
    VALIDATING = "validating"
    WAITING = "waiting"
    RUNNING_ENGINE = "running_engine"
    WRITING_REPORT = "writing_report"
    COMPLETED = "completed"
    FAILED = "failed"


_TERMINAL = {WorkflowState.COMPLETED, WorkflowState.FAILED}

_ALLOWED: Dict[WorkflowState, set] = {
    WorkflowState.PENDING:        {WorkflowState.VALIDATING, WorkflowState.FAILED},
    WorkflowState.VALIDATING:     {WorkflowState.WAITING, WorkflowState.FAILED},
    WorkflowState.WAITING:        {WorkflowState.RUNNING_ENGINE, WorkflowState.FAILED},
    WorkflowState.RUNNING_ENGINE: {WorkflowState.WRITING_REPORT, WorkflowState.FAILED},
    WorkflowState.WRITING_REPORT: {WorkflowState.COMPLETED, WorkflowState.FAILED},
    WorkflowState.COMPLETED:      set(),
    WorkflowState.FAILED:         set(),
}


# ============================================================================
# STATE MACHINE
# ============================================================================

class BacktestStateMachine:
    """Состояние одного запуска workflow с историей переходов"""

    def __init__(self, backtest_id: str):
        self.backtest_id = backtest_id
        self._state = WorkflowState.PENDING
        self.history: List[Dict[str, Any]] = []

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in _TERMINAL

    def transition(self, new_state: WorkflowState, reason: str = "") -> None:
        """Переход в новое состояние; недопустимый переход - BacktestError"""
        if new_state not in _ALLOWED[self._state]:
            raise BacktestError(
                f"Illegal workflow transition {self._state.value} -> {new_state.value}"
            )

        self.history.append({
            'from': self._state.value,
            'to': new_state.value,
            'reason': reason,
            'at': to_iso(get_current_utc_datetime()),
        })
        logger.info(
            f"🔄 Backtest {self.backtest_id}: {self._state.value} -> {new_state.value}"
            + (f" | {reason}" if reason else "")
        )
        self._state = new_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backtestId': self.backtest_id,
            'state': self._state.value,
            'history': list(self.history),
        }


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass
class BacktestRequest:
    """Вход workflow (результат submit)"""
    sub: str
    bot_id: str
    backtest_id: str
    wait_seconds: float
    window_start: str
    window_end: str

    @classmethod
    def from_metadata(cls, metadata: BacktestMetadata) -> 'BacktestRequest':
        return cls(
            sub=metadata.sub,
            bot_id=metadata.bot_id,
            backtest_id=metadata.backtest_id,
            wait_seconds=float(metadata.wait_seconds or 0),
            window_start=metadata.window_start,
            window_end=metadata.window_end,
        )


@dataclass
class WorkflowOutcome:
    """Итог выполнения workflow"""
    state: WorkflowState
    backtest_id: str
    report_key: Optional[str] = None
    error_message: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == WorkflowState.COMPLETED


# ============================================================================
# WORKFLOW
# ============================================================================

class BacktestWorkflow:
    """
    Оркестрация бэктеста

    Каждая стадия выполняется в пределах оставшегося общего таймаута.
    Любая ошибка любой стадии попадает в единый обработчик _fail, поэтому
    запись метаданных никогда не остается в pending/running.
    """

    def __init__(
        self,
        store: Store,
        report_store: ReportStore,
        publisher: EventPublisher,
        engine: Optional[BacktestEngine] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = get_current_utc_datetime,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.report_store = report_store
        self.publisher = publisher
        self.engine = engine or BacktestEngine(store=store, settings=self.settings)
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.clock = clock
        self.logger = setup_logger(f"{__name__}.BacktestWorkflow")

        self.timeout = float(self.settings.BACKTEST_WORKFLOW_TIMEOUT)
        self.stage_retries = self.settings.BACKTEST_STAGE_RETRIES
        self.retry_delay = STAGE_RETRY_DELAY

        self.stats = {
            'submitted': 0,
            'completed': 0,
            'failed': 0,
            'timeouts': 0,
            'reports_evicted': 0,
        }

    # ------------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------------

    async def _load_bot_record(self, sub: str, bot_id: str) -> Dict[str, Any]:
        record = await self.store.get('bots', {'sub': sub, 'botId': bot_id})
        if record is None:
            raise BacktestValidationError(f"Bot {bot_id} not found")
        return record

    async def _bot_backtests(self, sub: str, bot_id: str) -> List[BacktestMetadata]:
        records = await self.store.query_all('backtests', sub)
        return [BacktestMetadata.from_record(r) for r in records if r.get('botId') == bot_id]

    async def _ensure_not_in_flight(self, sub: str, bot_id: str, exclude: Optional[str] = None) -> None:
        for metadata in await self._bot_backtests(sub, bot_id):
            if metadata.backtest_id == exclude:
                continue
            if metadata.status in (BacktestStatus.PENDING, BacktestStatus.RUNNING):
                raise BacktestValidationError(
                    f"A backtest is already in progress for bot {bot_id}"
                )

    async def _load_metadata(self, request: BacktestRequest) -> Optional[BacktestMetadata]:
        record = await self.store.get('backtests', {'sub': request.sub, 'backtestId': request.backtest_id})
        return BacktestMetadata.from_record(record) if record is not None else None

    def _clamp_wait(self, seconds: float) -> float:
        return clamp(seconds, self.settings.BACKTEST_MIN_WAIT_SECONDS, self.settings.BACKTEST_MAX_WAIT_SECONDS)

    async def _stage(self, name: str, func: Callable[[], Awaitable[Any]], deadline: float, retry: bool = True) -> Any:
        """Стадия под оставшимся таймаутом, с retry на инфраструктурные ошибки"""
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise WorkflowTimeoutError(f"Workflow timed out before stage {name}")

        if retry:
            call = retry_async(func, max_retries=self.stage_retries,
                               delay=self.retry_delay, exceptions=RETRYABLE_ERRORS)
        else:
            call = func()

        try:
            return await asyncio.wait_for(call, timeout=remaining)
        except asyncio.TimeoutError as e:
            self.stats['timeouts'] += 1
            raise WorkflowTimeoutError(
                f"Stage {name} exceeded the workflow timeout of {self.timeout:.0f}s"
            ) from e

    # ------------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------------

    async def submit(self, sub: str, bot_id: str, now: Optional[datetime] = None) -> BacktestMetadata:
        """
        Создание pending бэктеста

        Raises:
            BacktestValidationError: бот не найден, бэктест уже идет,
                недостаточно истории цен
        """
        now = now or self.clock()
        record = await self._load_bot_record(sub, bot_id)
        await self._ensure_not_in_flight(sub, bot_id)

        pair = record.get('pair', '')
        window_start = now - timedelta(days=self.settings.BACKTEST_WINDOW_DAYS)
        page = await self.store.query('price_history', pair, start=to_iso(window_start),
                                      end=to_iso(now), ascending=True, limit=1)
        required_since = now - timedelta(days=self.settings.BACKTEST_MIN_HISTORY_DAYS)
        if not page.items or parse_iso(page.items[0]['timestamp']) > required_since:
            raise BacktestValidationError(
                f"Insufficient price history for {pair}: at least "
                f"{self.settings.BACKTEST_MIN_HISTORY_DAYS} days required"
            )

        wait_seconds = self.rng.randint(self.settings.BACKTEST_MIN_WAIT_SECONDS,
                                        self.settings.BACKTEST_MAX_WAIT_SECONDS)
        metadata = BacktestMetadata(
            sub=sub,
            backtest_id=generate_uuid(),
            bot_id=bot_id,
            status=BacktestStatus.PENDING,
            bot_config_snapshot=record,
            tested_at=to_iso(now),
            window_start=to_iso(window_start),
            window_end=to_iso(now),
            config_changed_since_test=False,
            wait_seconds=wait_seconds,
        )
        await self.store.put('backtests', metadata.to_record())

        self.stats['submitted'] += 1
        self.logger.info(f"🧪 Backtest {metadata.backtest_id} submitted for bot {bot_id} (wait {wait_seconds}s)")
        return metadata

    # ------------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------------

    async def _validate(self, request: BacktestRequest) -> Tuple[BotConfig, float]:
        record = await self._load_bot_record(request.sub, request.bot_id)
        await self._ensure_not_in_flight(request.sub, request.bot_id, exclude=request.backtest_id)

        try:
            bot = BotConfig.from_record(record)
        except ValidationError as e:
            raise BacktestValidationError(f"Invalid bot configuration: {e}") from e
        problems = bot.validate()
        if problems:
            raise BacktestValidationError("Invalid bot configuration: " + "; ".join(problems))

        metadata = await self._load_metadata(request)
        if metadata is None:
            raise BacktestValidationError(f"Backtest {request.backtest_id} not found")

        metadata.status = BacktestStatus.RUNNING
        metadata.bot_config_snapshot = record
        await self.store.put('backtests', metadata.to_record())

        return bot, self._clamp_wait(request.wait_seconds)

    async def _write_report(self, request: BacktestRequest, report: BacktestReport) -> str:
        key = report_key(request.sub, request.bot_id, request.backtest_id)
        await self.report_store.put_json(key, report.to_dict())

        metadata = await self._load_metadata(request)
        if metadata is None:
            raise BacktestError(f"Backtest {request.backtest_id} disappeared before completion")
        metadata.status = BacktestStatus.COMPLETED
        metadata.report_key = key
        metadata.completed_at = to_iso(self.clock())
        await self.store.put('backtests', metadata.to_record())

        await self._evict_old_results(request.sub, request.bot_id)
        return key

    async def _delete_result(self, metadata: BacktestMetadata) -> None:
        if metadata.report_key:
            try:
                await self.report_store.delete(metadata.report_key)
            except StoreError as e:
                # Осиротевший отчет не мешает удалению записи
                self.logger.warning(f"⚠️ Failed to delete report {metadata.report_key}: {e}")
        await self.store.delete('backtests', {'sub': metadata.sub, 'backtestId': metadata.backtest_id})

    async def _evict_old_results(self, sub: str, bot_id: str) -> int:
        """Удаление самых старых завершенных результатов сверх лимита на бота"""
        completed = [m for m in await self._bot_backtests(sub, bot_id)
                     if m.status == BacktestStatus.COMPLETED]
        completed.sort(key=lambda m: m.completed_at or m.tested_at, reverse=True)
        stale = completed[self.settings.BACKTEST_MAX_RESULTS_PER_BOT:]

        for metadata in stale:
            await self._delete_result(metadata)

        if stale:
            self.stats['reports_evicted'] += len(stale)
            self.logger.info(f"🔧 Evicted {len(stale)} old backtest results for bot {bot_id}")
        return len(stale)

    async def _fail(self, request: BacktestRequest, machine: BacktestStateMachine,
                    error: BaseException) -> WorkflowOutcome:
        """Единый обработчик отказа для всех стадий"""
        message = (str(error) or type(error).__name__)[:MAX_ERROR_MESSAGE_LENGTH]
        machine.transition(WorkflowState.FAILED, message)
        self.logger.error(f"❌ Backtest {request.backtest_id} failed: {message}")

        async def mark_failed():
            metadata = await self._load_metadata(request)
            if metadata is None:
                metadata = BacktestMetadata(
                    sub=request.sub,
                    backtest_id=request.backtest_id,
                    bot_id=request.bot_id,
                    status=BacktestStatus.FAILED,
                    bot_config_snapshot={},
                    tested_at=to_iso(self.clock()),
                    window_start=request.window_start,
                    window_end=request.window_end,
                )
            metadata.status = BacktestStatus.FAILED
            metadata.error_message = message
            metadata.completed_at = to_iso(self.clock())
            await self.store.put('backtests', metadata.to_record())

        await retry_async(mark_failed, max_retries=self.stage_retries,
                          delay=self.retry_delay, exceptions=RETRYABLE_ERRORS)

        await self.publisher.publish(EventType.BACKTEST_FAILED, {
            'sub': request.sub,
            'botId': request.bot_id,
            'backtestId': request.backtest_id,
            'errorMessage': message,
        })

        self.stats['failed'] += 1
        return WorkflowOutcome(
            state=machine.state,
            backtest_id=request.backtest_id,
            error_message=message,
            history=list(machine.history),
        )

    # ------------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------------

    async def run(self, request: BacktestRequest) -> WorkflowOutcome:
        """Полный прогон workflow; возвращает итог, не бросает доменных ошибок"""
        machine = BacktestStateMachine(request.backtest_id)
        deadline = asyncio.get_running_loop().time() + self.timeout

        try:
            machine.transition(WorkflowState.VALIDATING)
            bot, wait_seconds = await self._stage('validate', lambda: self._validate(request), deadline)

            machine.transition(WorkflowState.WAITING, format_duration(wait_seconds))
            await self._stage('wait', lambda: self.sleep(wait_seconds), deadline, retry=False)

            machine.transition(WorkflowState.RUNNING_ENGINE)
            report = await self._stage('run_engine', lambda: self.engine.run_from_store(
                bot, request.window_start, request.window_end, request.backtest_id
            ), deadline)

            machine.transition(WorkflowState.WRITING_REPORT)
            key = await self._stage('write_report', lambda: self._write_report(request, report), deadline)

            machine.transition(WorkflowState.COMPLETED)
        except Exception as e:
            return await self._fail(request, machine, e)

        await self.publisher.publish(EventType.BACKTEST_COMPLETED, {
            'sub': request.sub,
            'botId': request.bot_id,
            'backtestId': request.backtest_id,
            'reportKey': key,
            'summary': report.summary.to_dict(),
        })

        self.stats['completed'] += 1
        self.logger.info(f"✅ Backtest {request.backtest_id} completed: {key}")
        return WorkflowOutcome(
            state=machine.state,
            backtest_id=request.backtest_id,
            report_key=key,
            history=list(machine.history),
        )

    # ------------------------------------------------------------------------
    # Queries and updates
    # ------------------------------------------------------------------------

    async def mark_config_changed(self, sub: str, bot_id: str) -> int:
        """Пометка завершенных бэктестов бота как устаревших после правки конфигурации"""
        updated = 0
        for metadata in await self._bot_backtests(sub, bot_id):
            if metadata.status != BacktestStatus.COMPLETED or metadata.config_changed_since_test:
                continue
            metadata.config_changed_since_test = True
            await self.store.put('backtests', metadata.to_record())
            updated += 1

        if updated:
            self.logger.info(f"🔄 Marked {updated} backtests of bot {bot_id} as outdated")
        return updated

    async def purge_bot_results(self, sub: str, bot_id: str) -> int:
        """Удаление всех бэктестов и отчетов удаленного бота"""
        backtests = await self._bot_backtests(sub, bot_id)
        for metadata in backtests:
            await self._delete_result(metadata)

        if backtests:
            self.logger.info(f"🗑️ Purged {len(backtests)} backtests of deleted bot {bot_id}")
        return len(backtests)

    # ------------------------------------------------------------------------
    # Bot lifecycle events
    # ------------------------------------------------------------------------

    def attach(self) -> None:
        """Подписка на BotUpdated и BotDeleted"""
        self.publisher.subscribe(EventType.BOT_UPDATED, self.on_bot_updated)
        self.publisher.subscribe(EventType.BOT_DELETED, self.on_bot_deleted)

    async def on_bot_updated(self, event: Event) -> int:
        return await self.mark_config_changed(event.detail['sub'], event.detail['botId'])

    async def on_bot_deleted(self, event: Event) -> int:
        return await self.purge_bot_results(event.detail['sub'], event.detail['botId'])

    async def get_report(self, metadata: BacktestMetadata) -> Optional[Dict[str, Any]]:
        """JSON отчет завершенного бэктеста или None"""
        if not metadata.report_key:
            return None
        return await self.report_store.get_json(metadata.report_key)

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
