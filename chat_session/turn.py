"""Fold a completion stream into one in-progress assistant message."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional

from chat_ai.payload import media_data_uri
from chat_ai.streaming import CompletionEvent
from chat_ai.types import CompletionOptions, CompletionTurn, Message

from .types import StreamFn, TurnState

logger = logging.getLogger(__name__)

_TOKEN_EVENT_TYPES = frozenset({"text_delta", "thinking_delta", "inline_media"})

OnTurnUpdate = Callable[[Message, TurnState], None]


@dataclass
class TurnOutcome:
    message: Message
    state: TurnState
    error: Optional[str] = None
    cancelled: bool = False


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def fold_event(message: Message, event: CompletionEvent) -> Optional[Message]:
    """Return ``message`` with ``event`` applied, or ``None`` if the event carries nothing to fold."""
    event_type = event.get("type")
    if event_type == "text_delta":
        return message.model_copy(update={"content": message.content + event.get("delta", "")})
    if event_type == "thinking_delta":
        thinking = (message.thinking_content or "") + event.get("delta", "")
        return message.model_copy(update={"thinking_content": thinking})
    if event_type == "inline_media":
        mime_type = event.get("mime_type")
        url = event.get("url") or media_data_uri(event.get("data", ""), mime_type or "")
        return message.model_copy(update={"media_url": url, "media_mime_type": mime_type})
    if event_type == "usage":
        return message.model_copy(
            update={
                "input_tokens": event.get("input_tokens"),
                "output_tokens": event.get("output_tokens"),
                "cached_tokens": event.get("cached_tokens"),
            }
        )
    return None


def append_error(message: Message, error: str) -> Message:
    content = f"{message.content}\n\n{error}" if message.content else error
    return message.model_copy(update={"content": content})


class _Stopped(Exception):
    pass


async def _next_event(iterator: AsyncIterator[CompletionEvent], signal: Optional[asyncio.Event]) -> CompletionEvent:
    if signal is None:
        return await iterator.__anext__()
    if signal.is_set():
        raise _Stopped()

    next_task = asyncio.ensure_future(iterator.__anext__())
    signal_task = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({next_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        signal_task.cancel()
    if next_task in done:
        return next_task.result()
    next_task.cancel()
    raise _Stopped()


async def run_turn(
    message: Message,
    turns: List[CompletionTurn],
    options: CompletionOptions,
    stream_fn: StreamFn,
    on_update: Optional[OnTurnUpdate] = None,
) -> TurnOutcome:
    """Stream a completion into ``message``.

    The tree position of ``message`` is fixed by the caller; only its content
    fields change here. A stream error or transport failure is appended to the
    content and the turn ends as errored. A set ``options.signal`` ends the
    turn as finalized with whatever content arrived.
    """
    state = TurnState.AWAITING_FIRST_TOKEN
    error: Optional[str] = None
    cancelled = False

    def emit() -> None:
        if on_update is not None:
            on_update(message, state)

    emit()
    try:
        response = await _maybe_await(stream_fn(turns, options))
        iterator = response.__aiter__()
        while True:
            try:
                event = await _next_event(iterator, options.signal)
            except StopAsyncIteration:
                break

            event_type = event.get("type")
            if event_type == "done":
                break
            if event_type == "error":
                error = str(event.get("error") or "The completion stream failed.")
                break

            updated = fold_event(message, event)
            if updated is None:
                logger.debug("Ignoring completion event %r", event_type)
                continue
            message = updated
            if event_type in _TOKEN_EVENT_TYPES:
                state = TurnState.STREAMING
            emit()
    except _Stopped:
        cancelled = True
    except Exception as exc:
        logger.warning("Completion stream failed for message %s: %s", message.id, exc)
        error = str(exc) or exc.__class__.__name__

    if error is not None:
        message = append_error(message, error)
        state = TurnState.ERRORED
    else:
        state = TurnState.FINALIZED
    emit()
    return TurnOutcome(message=message, state=state, error=error, cancelled=cancelled)
