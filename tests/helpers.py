"""Test helpers for branch-chat."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from chat_ai.streaming import CompletionEventStream
from chat_ai.types import Message, Role

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def user_msg(
    message_id: str,
    content: str = "",
    parent_id: Optional[str] = None,
    created: float = 0,
    selected: Optional[float] = None,
) -> Message:
    return Message(
        id=message_id,
        role=Role.USER,
        content=content or message_id,
        parent_id=parent_id,
        created_at=at(created),
        selected_at=at(selected) if selected is not None else None,
    )


def assistant_msg(
    message_id: str,
    content: str = "",
    parent_id: Optional[str] = None,
    created: float = 0,
    selected: Optional[float] = None,
) -> Message:
    return Message(
        id=message_id,
        role=Role.ASSISTANT,
        content=content or message_id,
        parent_id=parent_id,
        created_at=at(created),
        selected_at=at(selected) if selected is not None else None,
    )


def ids(messages: List[Message]) -> List[str]:
    return [message.id for message in messages]


class Clock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: float = 1000) -> None:
        self.seconds = start

    def __call__(self) -> datetime:
        self.seconds += 1
        return at(self.seconds)


def scripted_stream_fn(events: List[Dict[str, Any]], calls: Optional[List[Any]] = None):
    """Completion stream that replays ``events`` and then finishes with ``done``."""

    def stream_fn(turns, options):
        if calls is not None:
            calls.append((turns, options))
        stream = CompletionEventStream()

        async def run():
            for event in events:
                await asyncio.sleep(0)
                stream.push(event)
            stream.push({"type": "done"})

        asyncio.create_task(run())
        return stream

    return stream_fn


def gated_stream_fn(gate: asyncio.Event, first_events: List[Dict[str, Any]], calls: Optional[List[Any]] = None):
    """Completion stream that pushes ``first_events`` and then waits on ``gate`` before finishing."""

    def stream_fn(turns, options):
        if calls is not None:
            calls.append((turns, options))
        stream = CompletionEventStream()

        async def run():
            for event in first_events:
                stream.push(event)
            await gate.wait()
            stream.push({"type": "done"})

        asyncio.create_task(run())
        return stream

    return stream_fn
