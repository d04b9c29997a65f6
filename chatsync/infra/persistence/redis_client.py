# =============================================================================
# File: chatsync/infra/persistence/redis_client.py  - Async Redis Client
# =============================================================================
# • Global singleton client (PING tested on init)
# • Shared connection pool for PUBLISH and pub/sub connections
# • Health check helper
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatsync.common.exceptions.exceptions import InfrastructureError
from chatsync.config.redis_config import RedisConfig, get_redis_config

log = logging.getLogger("chatsync.infra.redis_client")

_MAIN_REDIS_CLIENT: Optional[redis.Redis] = None
_CLIENT_INIT_LOCK = asyncio.Lock()


def build_redis_client(config: RedisConfig, **kwargs: Any) -> redis.Redis:
    """Build Redis client from RedisConfig"""
    opts = config.get_connection_kwargs()
    opts.update(kwargs)
    return redis.from_url(config.url, **opts)


async def init_global_client(config: Optional[RedisConfig] = None, **kwargs: Any) -> redis.Redis:
    """Idempotent global singleton init, PING tested."""
    global _MAIN_REDIS_CLIENT

    if _MAIN_REDIS_CLIENT is not None:
        try:
            await _MAIN_REDIS_CLIENT.ping()
            return _MAIN_REDIS_CLIENT
        except (RedisError, OSError):
            await close_global_client()

    async with _CLIENT_INIT_LOCK:
        if _MAIN_REDIS_CLIENT is None:
            client = build_redis_client(config or get_redis_config(), **kwargs)
            try:
                await client.ping()
            except (RedisError, OSError) as e:
                log.error(f"Failed to initialize Redis client: {e}")
                await client.aclose()
                raise InfrastructureError(f"Redis init error: {e}") from e
            _MAIN_REDIS_CLIENT = client
            log.info("Global Redis client initialized and ping OK.")

    return _MAIN_REDIS_CLIENT


async def close_global_client() -> None:
    global _MAIN_REDIS_CLIENT
    client, _MAIN_REDIS_CLIENT = _MAIN_REDIS_CLIENT, None
    if client is not None:
        try:
            await client.aclose()
            log.info("Global Redis client closed.")
        except (RedisError, OSError) as e:
            log.warning(f"Error closing global Redis client: {e}", exc_info=True)


def get_global_client() -> redis.Redis:
    if _MAIN_REDIS_CLIENT is None:
        raise RuntimeError("Redis client not initialized. Call init_global_client() first.")
    return _MAIN_REDIS_CLIENT


async def health_check(r: Optional[redis.Redis] = None) -> Dict[str, Any]:
    """Health status and basic server info."""
    r = r or get_global_client()
    try:
        await r.ping()
        info = await r.info()
    except (RedisError, OSError) as e:
        log.error(f"Error during Redis health check: {e}")
        return {"is_healthy": False, "error": str(e)}

    return {
        "is_healthy": True,
        "redis_version": info.get("redis_version"),
        "connected_clients": info.get("connected_clients"),
        "used_memory_human": info.get("used_memory_human"),
    }
