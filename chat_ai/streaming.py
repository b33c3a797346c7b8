"""Queue-backed completion event stream."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, Optional

CompletionEvent = Dict[str, Any]

TERMINAL_EVENT_TYPES = frozenset({"done", "error"})


class CompletionEventStream(AsyncIterator[CompletionEvent]):
    """Async iterator of completion events pushed by a provider.

    Events are plain dicts keyed by ``type``: ``text_delta`` and ``thinking_delta``
    carry ``delta``, ``inline_media`` carries ``data`` and ``mime_type``, ``usage``
    carries token counts, ``error`` carries ``error`` text. Nothing is queued
    after a terminal ``done`` or ``error`` event.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[CompletionEvent | None] = asyncio.Queue()
        self._done = False
        self._terminal: Optional[CompletionEvent] = None
        self._terminal_event = asyncio.Event()

    def push(self, event: CompletionEvent) -> None:
        if self._done:
            return
        self._queue.put_nowait(event)
        if event.get("type") in TERMINAL_EVENT_TYPES:
            self._set_terminal(event)
            self.end()

    def end(self) -> None:
        if not self._done:
            self._done = True
            self._queue.put_nowait(None)
        self._terminal_event.set()

    async def terminal(self) -> CompletionEvent:
        await self._terminal_event.wait()
        if self._terminal is None:
            raise RuntimeError("Stream finished without a terminal event.")
        return self._terminal

    def _set_terminal(self, event: CompletionEvent) -> None:
        if self._terminal is None:
            self._terminal = event
            self._terminal_event.set()

    def __aiter__(self) -> "CompletionEventStream":
        return self

    async def __anext__(self) -> CompletionEvent:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item
