"""
Signal Engine Report Store
Объектное хранилище JSON отчетов бэктестов
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from app.config.settings import Settings, get_settings
from utils.helpers import StoreError
from utils.logger import setup_logger


logger = setup_logger(__name__)


def report_key(sub: str, bot_id: str, backtest_id: str) -> str:
    """Ключ отчета: backtests/{sub}/{botId}/{backtestId}.json"""
    return f"backtests/{sub}/{bot_id}/{backtest_id}.json"


class ReportStore(ABC):
    """Put/get/delete JSON объектов по ключу"""

    @abstractmethod
    async def put_json(self, key: str, obj: Dict[str, Any]) -> None:
        """Запись объекта (перезапись если ключ уже есть)"""

    @abstractmethod
    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Объект по ключу или None"""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Удаление объекта (отсутствующий ключ - не ошибка)"""


class MemoryReportStore(ReportStore):
    """Хранилище отчетов в памяти"""

    def __init__(self):
        self.objects: Dict[str, str] = {}

    async def put_json(self, key: str, obj: Dict[str, Any]) -> None:
        self.objects[key] = json.dumps(obj, default=str)

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self.objects.get(key)
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


class LocalReportStore(ReportStore):
    """
    Отчеты в файлах под BACKTEST_REPORTS_DIR

    Файловый ввод-вывод выполняется в пуле потоков.
    """

    def __init__(self, root: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.root = Path(root or self.settings.BACKTEST_REPORTS_DIR)
        self.logger = setup_logger(f"{__name__}.LocalReportStore")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StoreError(f"Report key escapes the reports directory: {key}")
        return path

    def _write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + '.tmp')
        tmp.write_text(payload, encoding='utf-8')
        tmp.replace(path)

    async def put_json(self, key: str, obj: Dict[str, Any]) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(self._write, path, json.dumps(obj, default=str, ensure_ascii=False, indent=2))
        except OSError as e:
            raise StoreError(f"Failed to write report {key}: {e}") from e
        self.logger.debug(f"💾 Report written: {key}")

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            raw = await asyncio.to_thread(path.read_text, encoding='utf-8')
        except OSError as e:
            raise StoreError(f"Failed to read report {key}: {e}") from e
        return json.loads(raw)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to delete report {key}: {e}") from e
