"""Session event stream utilities."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Optional

from .types import SessionEvent


class SessionEventStream(AsyncIterator[SessionEvent]):
    def __init__(self) -> None:
        self._queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        self._done = False
        self._detach: Optional[Callable[[], None]] = None

    def attach(self, detach: Callable[[], None]) -> None:
        self._detach = detach

    def push(self, event: SessionEvent) -> None:
        if self._done:
            return
        self._queue.put_nowait(event)

    def end(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None
        if not self._done:
            self._done = True
            self._queue.put_nowait(None)

    def __aiter__(self) -> "SessionEventStream":
        return self

    async def __anext__(self) -> SessionEvent:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item
