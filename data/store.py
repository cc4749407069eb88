"""
Signal Engine Store Interface
Key-value/range хранилище: get, query (с пагинацией), scan, put, delete, batch_delete
"""

import copy
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from utils.logger import setup_logger
from utils.helpers import StoreError


logger = setup_logger(__name__)

DEFAULT_PAGE_SIZE = 100

Item = Dict[str, Any]
Predicate = Callable[[Item], bool]


# ============================================================================
# TABLE SCHEMA
# ============================================================================

@dataclass(frozen=True)
class TableSchema:
    """Ключевая схема логической таблицы"""
    name: str
    partition_key: str
    sort_key: Optional[str] = None

    def key_of(self, item: Item) -> Tuple[str, str]:
        """(partition, sort) элемента; отсутствующий ключ - ошибка"""
        if self.partition_key not in item:
            raise StoreError(f"Item for '{self.name}' is missing partition key '{self.partition_key}'")
        partition = str(item[self.partition_key])
        if self.sort_key is None:
            return partition, ''
        if self.sort_key not in item:
            raise StoreError(f"Item for '{self.name}' is missing sort key '{self.sort_key}'")
        return partition, str(item[self.sort_key])


TABLES: Dict[str, TableSchema] = {
    'bots': TableSchema('bots', 'sub', 'botId'),
    'trades': TableSchema('trades', 'botId', 'timestamp'),
    'price_history': TableSchema('price_history', 'pair', 'timestamp'),
    'bot_performance': TableSchema('bot_performance', 'botId', 'timestamp'),
    'portfolio_performance': TableSchema('portfolio_performance', 'sub', 'timestamp'),
    'portfolios': TableSchema('portfolios', 'sub'),
    'backtests': TableSchema('backtests', 'sub', 'backtestId'),
}


def get_table(table: str) -> TableSchema:
    try:
        return TABLES[table]
    except KeyError:
        raise StoreError(f"Unknown table: {table}")


# ============================================================================
# PAGINATION
# ============================================================================

@dataclass
class Page:
    """Страница результатов; next_token is None - данных больше нет"""
    items: List[Item] = field(default_factory=list)
    next_token: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_token is not None


def encode_token(partition: str, sort: str) -> str:
    return json.dumps([partition, sort])


def decode_token(token: str) -> Tuple[str, str]:
    try:
        partition, sort = json.loads(token)
    except (TypeError, ValueError) as e:
        raise StoreError(f"Invalid continuation token: {token!r}") from e
    return str(partition), str(sort)


# ============================================================================
# ABSTRACT STORE
# ============================================================================

class Store(ABC):
    """
    Абстрактное хранилище

    Таблицы описаны в TABLES; диапазонные запросы - по sort key внутри
    одного partition. Элементы возвращаются копиями.
    """

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE):
        self.page_size = page_size

    @abstractmethod
    async def get(self, table: str, key: Item) -> Optional[Item]:
        """Элемент по полному ключу или None"""

    @abstractmethod
    async def query(
        self,
        table: str,
        partition: str,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
    ) -> Page:
        """Диапазон по sort key [start, end] внутри partition"""

    @abstractmethod
    async def scan(
        self,
        table: str,
        *,
        predicate: Optional[Predicate] = None,
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
    ) -> Page:
        """
        Полный обход таблицы

        limit ограничивает число просмотренных элементов, фильтр применяется
        после - страница может быть пустой при непустом next_token.
        """

    @abstractmethod
    async def put(self, table: str, item: Item) -> None:
        """Запись элемента (перезапись по ключу)"""

    @abstractmethod
    async def delete(self, table: str, key: Item) -> None:
        """Удаление по ключу (отсутствующий ключ - не ошибка)"""

    async def batch_delete(self, table: str, keys: Iterable[Item]) -> int:
        """Удаление набора ключей, возвращает количество"""
        count = 0
        for key in keys:
            await self.delete(table, key)
            count += 1
        return count

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------------
    # Пагинация до исчерпания
    # ------------------------------------------------------------------------

    async def query_all(
        self,
        table: str,
        partition: str,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        ascending: bool = True,
    ) -> List[Item]:
        """Все элементы диапазона, следуя continuation token"""
        items: List[Item] = []
        token: Optional[str] = None
        while True:
            page = await self.query(
                table, partition, start=start, end=end,
                ascending=ascending, start_token=token,
            )
            items.extend(page.items)
            if page.next_token is None:
                return items
            token = page.next_token

    async def scan_all(self, table: str, *, predicate: Optional[Predicate] = None) -> List[Item]:
        """Все элементы таблицы, следуя continuation token"""
        items: List[Item] = []
        token: Optional[str] = None
        while True:
            page = await self.scan(table, predicate=predicate, start_token=token)
            items.extend(page.items)
            if page.next_token is None:
                return items
            token = page.next_token


# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class MemoryStore(Store):
    """Хранилище в памяти (тесты, локальные прогоны)"""

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE):
        super().__init__(page_size)
        self._tables: Dict[str, Dict[Tuple[str, str], Item]] = {name: {} for name in TABLES}
        self.stats = {'gets': 0, 'queries': 0, 'scans': 0, 'puts': 0, 'deletes': 0}

    async def get(self, table: str, key: Item) -> Optional[Item]:
        schema = get_table(table)
        self.stats['gets'] += 1
        item = self._tables[table].get(schema.key_of(key))
        return copy.deepcopy(item) if item is not None else None

    async def query(
        self,
        table: str,
        partition: str,
        *,
        start: Optional[str] = None,
        end: Optional[str] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
    ) -> Page:
        get_table(table)
        self.stats['queries'] += 1
        limit = limit or self.page_size

        keys = sorted(
            (k for k in self._tables[table] if k[0] == str(partition)),
            key=lambda k: k[1],
            reverse=not ascending,
        )
        keys = [k for k in keys
                if (start is None or k[1] >= start) and (end is None or k[1] <= end)]

        if start_token is not None:
            _, last_sort = decode_token(start_token)
            keys = [k for k in keys if (k[1] > last_sort if ascending else k[1] < last_sort)]

        page_keys = keys[:limit]
        next_token = encode_token(*page_keys[-1]) if len(keys) > limit else None
        return Page([copy.deepcopy(self._tables[table][k]) for k in page_keys], next_token)

    async def scan(
        self,
        table: str,
        *,
        predicate: Optional[Predicate] = None,
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
    ) -> Page:
        get_table(table)
        self.stats['scans'] += 1
        limit = limit or self.page_size

        keys = sorted(self._tables[table])
        if start_token is not None:
            last_key = decode_token(start_token)
            keys = [k for k in keys if k > last_key]

        page_keys = keys[:limit]
        next_token = encode_token(*page_keys[-1]) if len(keys) > limit else None
        items = [copy.deepcopy(self._tables[table][k]) for k in page_keys]
        if predicate is not None:
            items = [item for item in items if predicate(item)]
        return Page(items, next_token)

    async def put(self, table: str, item: Item) -> None:
        schema = get_table(table)
        self.stats['puts'] += 1
        self._tables[table][schema.key_of(item)] = copy.deepcopy(item)

    async def delete(self, table: str, key: Item) -> None:
        schema = get_table(table)
        self.stats['deletes'] += 1
        self._tables[table].pop(schema.key_of(key), None)

    def count(self, table: str) -> int:
        return len(self._tables[get_table(table).name])
