# =============================================================================
# File: chatsync/sync/presence.py
# Description: Presence Tracker - this user's online/offline flag
# =============================================================================

"""
Presence Tracker

    offline --(visible / heartbeat while visible)--> online
    online  --(hidden / page unload / stop)--------> offline

last_seen is written only on online -> offline. The tracker only ever
writes the presence of the user it was created for.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from chatsync.chat.enums import PresenceState
from chatsync.chat.ports.chat_store_port import ChatStorePort
from chatsync.common.base.base_model import utc_now
from chatsync.common.exceptions.exceptions import ChatSyncException
from chatsync.config.realtime_config import RealtimeConfig, get_realtime_config
from chatsync.realtime.reactive import ReactiveValue

log = logging.getLogger("chatsync.sync.presence")


class PresenceTracker:
    """Heartbeat plus visibility transitions for the current user"""

    def __init__(
        self,
        user_id: uuid.UUID,
        store: ChatStorePort,
        config: Optional[RealtimeConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._user_id = user_id
        self._store = store
        self._config = config or get_realtime_config()
        self._clock = clock
        self._visible = True
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None

        self.state: ReactiveValue[PresenceState] = ReactiveValue(PresenceState.OFFLINE, "presence")

    @property
    def is_online(self) -> bool:
        return self.state.value == PresenceState.ONLINE

    @property
    def is_visible(self) -> bool:
        return self._visible

    async def start(self, visible: bool = True) -> None:
        self._visible = visible
        if visible:
            await self._go_online()
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="chatsync-presence")

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        await self._go_offline()

    async def on_visibility_change(self, visible: bool) -> None:
        self._visible = visible
        if visible:
            await self._go_online()
        else:
            await self._go_offline()

    async def on_page_unload(self) -> None:
        self._visible = False
        await self._go_offline()

    async def heartbeat(self) -> None:
        """One heartbeat tick: (re)assert online while visible."""
        if not self._visible:
            return
        if self.is_online:
            await self._store.set_presence(self._user_id, True)
        else:
            await self._go_online()

    async def _heartbeat_loop(self) -> None:
        interval = self._config.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.heartbeat()
            except ChatSyncException as e:
                log.warning(f"Presence heartbeat for {self._user_id} failed: {e}")

    async def _go_online(self) -> None:
        async with self._lock:
            if self.is_online:
                return
            await self._store.set_presence(self._user_id, True)
            self.state._set(PresenceState.ONLINE)
            log.debug(f"User {self._user_id} online")

    async def _go_offline(self) -> None:
        async with self._lock:
            if not self.is_online:
                return
            await self._store.set_presence(self._user_id, False, last_seen=self._clock())
            self.state._set(PresenceState.OFFLINE)
            log.debug(f"User {self._user_id} offline")
