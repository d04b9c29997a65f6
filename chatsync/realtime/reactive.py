# =============================================================================
# File: chatsync/realtime/reactive.py
# Description: Read-only reactive handle over state owned by one component
# =============================================================================

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class ReactiveValue(Generic[T]):
    """
    Holds an immutable value replaced by its owner.

    Readers get .value, await wait_for(predicate) or iterate watch().
    Only the owning component calls _set(); values are replaced, never
    mutated, so a reader never sees a half-applied delta.
    """

    def __init__(self, initial: T, name: str = ""):
        self.name = name
        self._value = initial
        self._version = 0
        self._changed: Optional[asyncio.Event] = None

    @property
    def value(self) -> T:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    def _set(self, value: T) -> None:
        self._value = value
        self._version += 1
        event, self._changed = self._changed, None
        if event is not None:
            event.set()

    def _change_event(self) -> asyncio.Event:
        if self._changed is None:
            self._changed = asyncio.Event()
        return self._changed

    async def wait_for(self, predicate: Callable[[T], bool], timeout: Optional[float] = None) -> T:
        """Wait until predicate(value) holds and return that value."""
        async def _wait() -> T:
            while not predicate(self._value):
                await self._change_event().wait()
            return self._value

        return await asyncio.wait_for(_wait(), timeout)

    async def watch(self) -> AsyncIterator[T]:
        """Yield the current value, then each new one (intermediate values may coalesce)."""
        seen = -1
        while True:
            if self._version != seen:
                seen = self._version
                yield self._value
            else:
                await self._change_event().wait()

    def __repr__(self) -> str:
        return f"ReactiveValue({self.name!r}, version={self._version})"
