import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import (
    InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

from . import config
from .exceptions import StorageUnavailable
from .models import Base

# --- Логирование ---
logger = logging.getLogger(__name__)

# Ошибки, означающие недоступность хранилища, а не ошибку запроса
STORAGE_ERRORS = (
    OperationalError,
    InterfaceError,
    PoolTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)


# --- Создание движка БД ---
def make_engine(database_url: str | None = None) -> AsyncEngine:
    url = database_url or config.DATABASE_URL
    options: dict = {"echo": config.DB_ECHO}
    if url.startswith("sqlite"):
        # busy timeout SQLite вместо бесконечного ожидания блокировки
        options["connect_args"] = {"timeout": config.DB_POOL_TIMEOUT}
    else:
        options["pool_timeout"] = config.DB_POOL_TIMEOUT
        options["pool_pre_ping"] = True
        if "asyncpg" in url:
            options["connect_args"] = {
                "timeout": config.DB_POOL_TIMEOUT,
                "command_timeout": config.DB_POOL_TIMEOUT,
            }
    logger.info(f"Creating database engine for {url.split('://')[0]}")
    return create_async_engine(url, **options)


# --- Фабрика сессий ---
def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


# --- Создание таблиц при старте ---
async def create_db_and_tables(engine: AsyncEngine) -> None:
    async with storage_errors("create tables"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized.")


# --- Перевод ошибок драйвера в StorageUnavailable ---
@asynccontextmanager
async def storage_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except STORAGE_ERRORS as e:
        raise StorageUnavailable(
            "Storage unavailable", {"operation": operation}
        ) from e
