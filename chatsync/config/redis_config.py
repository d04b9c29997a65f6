# =============================================================================
# File: chatsync/config/redis_config.py
# Description: Configuration for the Redis client and change-feed channels
# =============================================================================

from functools import lru_cache
from typing import Any, Dict

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from chatsync.common.base.base_config import BaseConfig


class RedisConfig(BaseConfig):
    """Redis connection and pub/sub settings (REDIS_URL, REDIS_MAX_CONNECTIONS, ...)"""

    model_config = SettingsConfigDict(
        **{**BaseConfig.model_config, 'env_prefix': 'REDIS_'},
    )

    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    max_connections: int = Field(default=50, description="Maximum number of connections in the pool")
    socket_timeout: float = Field(default=15.0, description="Socket timeout in seconds")
    socket_connect_timeout: float = Field(default=5.0, description="Socket connection timeout in seconds")
    health_check_interval: int = Field(default=30, description="Connection health check interval (seconds)")
    channel_prefix: str = Field(default="chatsync", description="Namespace prefix for change-feed channels")
    poll_timeout: float = Field(default=1.0, description="Pub/sub get_message timeout (seconds)")

    def get_connection_kwargs(self) -> Dict[str, Any]:
        return {
            "decode_responses": True,
            "max_connections": self.max_connections,
            "socket_timeout": self.socket_timeout,
            "socket_connect_timeout": self.socket_connect_timeout,
            "health_check_interval": self.health_check_interval,
        }


@lru_cache(maxsize=1)
def get_redis_config() -> RedisConfig:
    """Get Redis configuration singleton (cached)."""
    return RedisConfig()


def reset_redis_config() -> None:
    """Reset config singleton (for testing)."""
    get_redis_config.cache_clear()
