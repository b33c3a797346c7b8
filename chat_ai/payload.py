"""Convert a conversation branch into completion turns."""

from __future__ import annotations

from typing import Iterable, List

from .types import CompletionTurn, Message


def build_turns(messages: Iterable[Message], *, include_media: bool = True) -> List[CompletionTurn]:
    turns: List[CompletionTurn] = []
    for message in messages:
        has_text = bool(message.content.strip())
        media = include_media and message.has_media and message.media_mime_type is not None
        if not has_text and not media:
            continue
        turns.append(
            CompletionTurn(
                role=message.role,
                text=message.content if has_text else "",
                media_url=message.media_url if media else None,
                media_mime_type=message.media_mime_type if media else None,
            )
        )
    return turns


def media_data_uri(data: str, mime_type: str) -> str:
    return f"data:{mime_type};base64,{data}"
