"""
Signal Engine SQL Store
Реализация Store поверх SQLAlchemy async engine (aiosqlite)
"""

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import aiosqlite
from sqlalchemy import and_, delete, func, or_, select, text, tuple_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config.settings import Settings, get_settings
from data.models import Base, StoreItem
from data.store import Item, Page, Predicate, Store, decode_token, encode_token, get_table
from utils.helpers import StoreError, chunk_list
from utils.logger import setup_logger


# ============================================================================
# КОНСТАНТЫ
# ============================================================================

# SQLite pragma настройки для файловой БД
SQLITE_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA temp_store=memory",
]

# Ключей на один DELETE в batch_delete
BATCH_DELETE_CHUNK = 25


# ============================================================================
# ОСНОВНОЙ КЛАСС БД
# ============================================================================

class SqlStore(Store):
    """
    Хранилище в одной таблице store_items

    Ключ строки - (table_name, partition_key, sort_key), элемент - JSON payload.
    """

    def __init__(self, settings: Optional[Settings] = None, database_url: Optional[str] = None):
        self.settings = settings or get_settings()
        super().__init__(page_size=self.settings.STORE_PAGE_SIZE)
        self.logger = setup_logger(f"{__name__}.SqlStore")

        self.database_url = database_url or self.settings.DATABASE_URL
        self.async_engine = None
        self.async_session_factory = None
        self._initialized = False

    @property
    def _sqlite_path(self) -> Optional[str]:
        """Путь к файлу SQLite или None для :memory:"""
        if ':///' not in self.database_url or ':memory:' in self.database_url:
            return None
        return self.database_url.split(':///', 1)[1]

    async def init(self) -> None:
        """
        Инициализация подключения и схемы
        """
        if self._initialized:
            return

        try:
            self.logger.info("🗄️ Initializing SQL store...")

            if self._sqlite_path:
                Path(self._sqlite_path).parent.mkdir(parents=True, exist_ok=True)

            self.async_engine = create_async_engine(
                self.database_url,
                echo=self.settings.DATABASE_ECHO,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            async with self.async_engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            await self._optimize_sqlite()
            await self._check_connection()

            self._initialized = True
            self.logger.info("✅ SQL store initialized successfully")

        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to initialize SQL store: {e}")
            raise StoreError(f"Failed to initialize SQL store: {e}") from e

    async def close(self) -> None:
        """Закрытие подключения к БД"""
        if self.async_engine is not None:
            self.logger.info("🔒 Closing SQL store connections...")
            await self.async_engine.dispose()
        self._initialized = False

    @asynccontextmanager
    async def get_session(self):
        """
        Async context manager для получения сессии БД
        Ошибки SQLAlchemy превращаются в StoreError.
        """
        if not self._initialized:
            await self.init()

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                self.logger.error(f"❌ Database session error: {e}")
                raise StoreError(str(e)) from e

    async def _optimize_sqlite(self) -> None:
        """Pragma настройки для файловой SQLite"""
        if not self._sqlite_path:
            return
        try:
            async with aiosqlite.connect(self._sqlite_path) as conn:
                for pragma in SQLITE_PRAGMA_SETTINGS:
                    await conn.execute(pragma)
                await conn.commit()
            self.logger.debug("🔧 SQLite optimizations applied")
        except aiosqlite.Error as e:
            self.logger.warning(f"⚠️ Failed to apply SQLite optimizations: {e}")

    async def _check_connection(self) -> None:
        async with self.async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.fetchone()
        self.logger.debug("✅ Database connection verified")

    # ============================================================================
    # STORE OPERATIONS
    # ============================================================================

    @staticmethod
    def _load(row: StoreItem) -> Item:
        return json.loads(row.payload)

    async def get(self, table: str, key: Item) -> Optional[Item]:
        partition, sort = get_table(table).key_of(key)
        async with self.get_session() as session:
            result = await session.execute(
                select(StoreItem).where(
                    StoreItem.table_name == table,
                    StoreItem.partition_key == partition,
                    StoreItem.sort_key == sort,
                )
            )
            row = result.scalar_one_or_none()
            return self._load(row) if row is not None else None

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
        limit = limit or self.page_size

        conditions = [StoreItem.table_name == table, StoreItem.partition_key == str(partition)]
        if start is not None:
            conditions.append(StoreItem.sort_key >= start)
        if end is not None:
            conditions.append(StoreItem.sort_key <= end)
        if start_token is not None:
            _, last_sort = decode_token(start_token)
            conditions.append(StoreItem.sort_key > last_sort if ascending else StoreItem.sort_key < last_sort)

        order = StoreItem.sort_key.asc() if ascending else StoreItem.sort_key.desc()
        stmt = select(StoreItem).where(*conditions).order_by(order).limit(limit + 1)

        async with self.get_session() as session:
            rows = list((await session.execute(stmt)).scalars().all())

        has_more = len(rows) > limit
        rows = rows[:limit]
        next_token = encode_token(rows[-1].partition_key, rows[-1].sort_key) if has_more else None
        return Page([self._load(row) for row in rows], next_token)

    async def scan(
        self,
        table: str,
        *,
        predicate: Optional[Predicate] = None,
        limit: Optional[int] = None,
        start_token: Optional[str] = None,
    ) -> Page:
        get_table(table)
        limit = limit or self.page_size

        conditions = [StoreItem.table_name == table]
        if start_token is not None:
            last_partition, last_sort = decode_token(start_token)
            conditions.append(or_(
                StoreItem.partition_key > last_partition,
                and_(StoreItem.partition_key == last_partition, StoreItem.sort_key > last_sort),
            ))

        stmt = (
            select(StoreItem)
            .where(*conditions)
            .order_by(StoreItem.partition_key.asc(), StoreItem.sort_key.asc())
            .limit(limit + 1)
        )

        async with self.get_session() as session:
            rows = list((await session.execute(stmt)).scalars().all())

        has_more = len(rows) > limit
        rows = rows[:limit]
        next_token = encode_token(rows[-1].partition_key, rows[-1].sort_key) if has_more else None
        items = [self._load(row) for row in rows]
        if predicate is not None:
            items = [item for item in items if predicate(item)]
        return Page(items, next_token)

    async def put(self, table: str, item: Item) -> None:
        partition, sort = get_table(table).key_of(item)
        try:
            payload = json.dumps(item, default=str)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Item for '{table}' is not JSON serialisable: {e}") from e

        async with self.get_session() as session:
            result = await session.execute(
                select(StoreItem).where(
                    StoreItem.table_name == table,
                    StoreItem.partition_key == partition,
                    StoreItem.sort_key == sort,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                session.add(StoreItem(
                    table_name=table, partition_key=partition, sort_key=sort, payload=payload
                ))
            else:
                row.payload = payload

    async def delete(self, table: str, key: Item) -> None:
        partition, sort = get_table(table).key_of(key)
        async with self.get_session() as session:
            await session.execute(
                delete(StoreItem).where(
                    StoreItem.table_name == table,
                    StoreItem.partition_key == partition,
                    StoreItem.sort_key == sort,
                )
            )

    async def batch_delete(self, table: str, keys: Iterable[Item]) -> int:
        """Удаление пачками: один DELETE ... IN на чанк ключей"""
        schema = get_table(table)
        pairs = [schema.key_of(key) for key in keys]
        for chunk in chunk_list(pairs, BATCH_DELETE_CHUNK):
            async with self.get_session() as session:
                await session.execute(
                    delete(StoreItem).where(
                        StoreItem.table_name == table,
                        tuple_(StoreItem.partition_key, StoreItem.sort_key).in_(chunk),
                    )
                )
        return len(pairs)

    async def get_stats(self) -> Dict[str, Any]:
        """Количество элементов по таблицам"""
        async with self.get_session() as session:
            result = await session.execute(
                select(StoreItem.table_name, func.count()).group_by(StoreItem.table_name)
            )
            return {name: count for name, count in result.all()}
