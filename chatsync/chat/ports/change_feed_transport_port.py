# =============================================================================
# File: chatsync/chat/ports/change_feed_transport_port.py
# Description: Port interface for the change-feed transport
# Pattern: Hexagonal Architecture / Ports & Adapters
# =============================================================================

from __future__ import annotations

from typing import Protocol, Dict, Any, AsyncIterator, runtime_checkable


@runtime_checkable
class TransportChannel(Protocol):
    """
    An open channel on the transport.

    Iteration yields raw change payloads ({operation, table, before?, after?})
    and raises TransportInterruptedError when the underlying stream drops.
    """

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class ChangeFeedTransportPort(Protocol):
    """
    Port: Change-Feed Transport

    Defined by: Realtime layer
    Implemented by: RedisChangeFeedTransport (chatsync/infra/transport/redis_change_feed.py)

    At-least-once, best-effort ordering per channel, no gap replay.
    """

    async def publish(self, channel: str, payload: Dict[str, Any]) -> None:
        ...

    async def open_channel(self, channel: str) -> TransportChannel:
        """
        Open a channel. The channel is listening once this returns, so a
        full fetch made afterwards cannot miss changes published later.

        Raises:
            TransportInterruptedError: transport unavailable
        """
        ...
