# =============================================================================
# File: chatsync/infra/persistence/pg_client.py
# =============================================================================
# AsyncPG pool helper: global pool, transaction context with ContextVar
# connection sharing, schema bootstrap, health check, error translation
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import pathlib
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Optional

import asyncpg
from asyncpg.exceptions import (
    InsufficientPrivilegeError,
    PostgresError,
    UniqueViolationError,
)

from chatsync.common.exceptions.exceptions import (
    ConflictDuplicateError,
    InfrastructureError,
    PermissionDeniedError,
)
from chatsync.config.pg_client_config import DatabaseConfig, get_database_config

log = logging.getLogger("chatsync.infra.pg_client")

# =============================================================================
# Transaction Context (ContextVar for async context)
# =============================================================================

# Connection of the enclosing transaction(); acquire_connection() reuses it
_current_transaction_connection: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
    'transaction_connection', default=None
)

_POOL: Optional[asyncpg.Pool] = None
_POOL_LOCK = asyncio.Lock()

DEFAULT_SCHEMA_FILE = pathlib.Path(__file__).resolve().parents[2] / "database" / "chatsync.sql"


# =============================================================================
# Pool lifecycle
# =============================================================================

async def _init_connection(conn: asyncpg.Connection) -> None:
    """JSONB codec for automatic dict<->JSONB conversion"""
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )


async def init_db_pool(dsn: Optional[str] = None, config: Optional[DatabaseConfig] = None) -> asyncpg.Pool:
    """Initialize the global asyncpg pool. Idempotent."""
    global _POOL
    config = config or get_database_config()

    async with _POOL_LOCK:
        if _POOL is None or _POOL.is_closing():
            dsn = dsn or config.get_dsn()
            params = config.pool.to_asyncpg_params()
            log.info(f"Initializing PostgreSQL pool (hidden DSN): {dsn.split('@')[-1]}")
            try:
                pool = await asyncpg.create_pool(dsn=dsn, init=_init_connection, **params)
                async with pool.acquire() as conn:
                    await conn.fetchval("SELECT 1")
            except (OSError, PostgresError) as e:
                log.critical(f"Failed to init PostgreSQL pool: {e}", exc_info=True)
                raise InfrastructureError(f"PostgreSQL pool init error: {e}") from e
            _POOL = pool
            log.info(f"PostgreSQL pool ready. Min/Max size: {params['min_size']}/{params['max_size']}")

    return _POOL


async def get_pool(ensure_initialized: bool = True) -> asyncpg.Pool:
    if _POOL is None or _POOL.is_closing():
        if not ensure_initialized:
            raise InfrastructureError("PostgreSQL pool not available")
        await init_db_pool()
    return _POOL


async def close_db_pool() -> None:
    """Close the global pool gracefully."""
    global _POOL
    async with _POOL_LOCK:
        pool, _POOL = _POOL, None
        if pool is not None and not pool.is_closing():
            log.info("Closing PostgreSQL pool...")
            await pool.close()
            log.info("PostgreSQL pool closed.")


# =============================================================================
# Error translation
# =============================================================================

@asynccontextmanager
async def translate_pg_errors(operation: str) -> AsyncIterator[None]:
    """
    Map driver errors onto the chatsync taxonomy:
        unique_violation        -> ConflictDuplicateError
        insufficient_privilege  -> PermissionDeniedError (row policies / guards)
        other PostgresError     -> InfrastructureError
    """
    try:
        yield
    except UniqueViolationError as e:
        raise ConflictDuplicateError(f"{operation}: {e.detail or e}", details={"constraint": e.constraint_name}) from e
    except InsufficientPrivilegeError as e:
        raise PermissionDeniedError(f"{operation}: {e}") from e
    except PostgresError as e:
        log.error(f"{operation} failed: {e}")
        raise InfrastructureError(f"{operation}: {e}") from e


# =============================================================================
# Connection helpers
# =============================================================================

@asynccontextmanager
async def acquire_connection() -> AsyncIterator[asyncpg.Connection]:
    """The enclosing transaction's connection, or a pooled one."""
    conn = _current_transaction_connection.get()
    if conn is not None:
        yield conn
        return
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn


def _log_slow(kind: str, query: str, started: float) -> None:
    elapsed_ms = (time.monotonic() - started) * 1000
    if elapsed_ms > get_database_config().slow_query_threshold_ms:
        log.warning(f"[SLOW QUERY] {kind} took {elapsed_ms:.1f}ms: {query[:150]}...")


async def fetchval(query: str, *args: Any, column: int = 0, timeout: Optional[float] = None) -> Any:
    started = time.monotonic()
    async with acquire_connection() as conn:
        result = await conn.fetchval(query, *args, column=column, timeout=timeout)
    _log_slow("FETCHVAL", query, started)
    return result


# =============================================================================
# Transaction Context Manager
# =============================================================================

@asynccontextmanager
async def transaction(timeout: Optional[float] = None) -> AsyncIterator[asyncpg.Connection]:
    """
    Create a database transaction context manager.

    Usage:
        async with transaction() as conn:
            await conn.execute("INSERT INTO ...")

    Commits on normal exit, rolls back on exception. acquire_connection()
    inside the block returns the same connection.
    """
    pool = await get_pool()
    conn = await pool.acquire(timeout=timeout)
    token = _current_transaction_connection.set(conn)
    try:
        async with conn.transaction():
            yield conn
    finally:
        _current_transaction_connection.reset(token)
        await pool.release(conn)


# =============================================================================
# Schema / health
# =============================================================================

async def run_schema_from_file(file_path_str: Optional[str] = None) -> None:
    """Execute DDL statements from a SQL file (default: the packaged chatsync.sql)."""
    path = pathlib.Path(file_path_str or get_database_config().schema_file or DEFAULT_SCHEMA_FILE)
    file_path_str = str(path)
    if not path.is_file():
        raise FileNotFoundError(f"Schema file not found: {file_path_str}")

    sql = path.read_text(encoding="utf-8").strip()
    if not sql:
        log.warning(f"Schema file {file_path_str} is empty")
        return

    async with acquire_connection() as conn:
        async with translate_pg_errors(f"schema {path.name}"):
            await conn.execute(sql)
    log.info(f"Schema from {file_path_str} applied successfully")


async def health_check() -> Dict[str, Any]:
    """PostgreSQL health: ping latency and pool usage."""
    started = time.monotonic()
    try:
        pool = await get_pool()
        await fetchval("SELECT 1")
    except (InfrastructureError, OSError, PostgresError) as e:
        return {"is_healthy": False, "error": str(e)}
    return {
        "is_healthy": True,
        "latency_ms": round((time.monotonic() - started) * 1000, 2),
        "pool_size": pool.get_size(),
        "pool_idle": pool.get_idle_size(),
    }
