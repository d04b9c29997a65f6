# =============================================================================
# File: chatsync/config/realtime_config.py
# Description: Change-feed, presence and notification tuning
# =============================================================================

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import SettingsConfigDict

from chatsync.common.base.base_config import BaseConfig


class RealtimeConfig(BaseConfig):
    """
    Realtime engine configuration.

    Reconnect delays double from reconnect_initial_delay up to
    reconnect_max_delay; jitter is a +/- fraction of the computed delay.
    """

    model_config = SettingsConfigDict(
        **{**BaseConfig.model_config, 'env_prefix': 'CHATSYNC_REALTIME_'},
    )

    # Change-feed reconnection
    reconnect_initial_delay: float = Field(default=1.0, gt=0, description="First reconnect delay (seconds)")
    reconnect_backoff_factor: float = Field(default=2.0, ge=1.0, description="Delay multiplier per failure")
    reconnect_max_delay: float = Field(default=30.0, gt=0, description="Reconnect delay ceiling (seconds)")
    reconnect_jitter: float = Field(default=0.2, ge=0.0, le=1.0, description="Jitter fraction (0 disables)")
    subscription_queue_size: int = Field(default=1000, gt=0, description="Per-topic buffered events")

    # Presence
    heartbeat_interval: float = Field(default=30.0, gt=0, description="Presence heartbeat period (seconds)")

    # Notifications
    notification_window: int = Field(default=50, gt=0, description="Notifications kept in the feed")

    # Personal-chat dedup
    dedup_lookup_attempts: int = Field(default=3, gt=0, description="Lookups after a lost creation race")
    dedup_lookup_delay: float = Field(default=0.05, ge=0, description="Delay between dedup lookups (seconds)")

    @model_validator(mode="after")
    def _check_delays(self) -> "RealtimeConfig":
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_initial_delay")
        return self


@lru_cache(maxsize=1)
def get_realtime_config() -> RealtimeConfig:
    """Get realtime configuration singleton (cached)."""
    return RealtimeConfig()


def reset_realtime_config() -> None:
    """Reset config singleton (for testing)."""
    get_realtime_config.cache_clear()
