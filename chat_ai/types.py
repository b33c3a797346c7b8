"""Core types for conversation messages, conversations, and completion turns."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TITLE = "New Chat"
DEFAULT_MODEL_NAME = "gemini-2.5-flash"
TITLE_MAX_CHARS = 50

# Models that have been removed; conversations referencing them fall back to the default.
DEPRECATED_MODELS = frozenset(
    {
        "deepseek/deepseek-chat",
        "moonshotai/kimi-k2.5",
        "meta-llama/llama-4-maverick:free",
        "gemini-flash-latest",
        "gemini-pro-latest",
        "gemini-2.5-flash-image",
        "gemini-3-pro-image-preview",
        "veo-3.1-generate-preview",
    }
)

# Updates to any of these fields count as activity on the conversation.
_TOUCHING_FIELDS = frozenset(
    {
        "title",
        "system_instruction",
        "model_name",
        "temperature",
        "top_p",
        "top_k",
        "max_output_tokens",
        "thinking_budget",
        "google_search_enabled",
        "code_execution_enabled",
        "url_context_enabled",
        "image_generation_enabled",
        "video_generation_enabled",
        "is_pinned",
        "is_archived",
    }
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return uuid4().hex


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def opposite(self) -> "Role":
        return Role.ASSISTANT if self is Role.USER else Role.USER


class Message(BaseModel):
    """A node in the conversation tree.

    Only ``role``, ``parent_id``, ``created_at`` and ``selected_at`` take part in
    navigation; the remaining fields are payload carried along for rendering.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=generate_id)
    role: Role
    content: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    selected_at: Optional[datetime] = None
    parent_id: Optional[str] = None
    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cached_tokens: Optional[int] = None
    thinking_content: Optional[str] = None

    @property
    def is_user(self) -> bool:
        return self.role is Role.USER

    @property
    def has_media(self) -> bool:
        return bool(self.media_url)

    @property
    def has_token_counts(self) -> bool:
        return any(
            value is not None for value in (self.input_tokens, self.output_tokens, self.cached_tokens)
        )

    @property
    def has_persistable_content(self) -> bool:
        has_text = bool(self.content.strip())
        has_thinking = bool((self.thinking_content or "").strip())
        return has_text or self.has_media or has_thinking


def create_user_message(
    content: str,
    parent_id: Optional[str] = None,
    *,
    created_at: Optional[datetime] = None,
    selected_at: Optional[datetime] = None,
) -> Message:
    return Message(
        role=Role.USER,
        content=content,
        parent_id=parent_id,
        created_at=created_at or utc_now(),
        selected_at=selected_at,
    )


def create_assistant_message(
    content: str = "",
    parent_id: Optional[str] = None,
    *,
    created_at: Optional[datetime] = None,
    selected_at: Optional[datetime] = None,
) -> Message:
    return Message(
        role=Role.ASSISTANT,
        content=content,
        parent_id=parent_id,
        created_at=created_at or utc_now(),
        selected_at=selected_at,
    )


class Conversation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=generate_id)
    title: str = DEFAULT_TITLE
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    is_pinned: bool = False
    is_archived: bool = False
    system_instruction: Optional[str] = None
    model_name: str = DEFAULT_MODEL_NAME
    temperature: float = 1.0
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 8192
    thinking_budget: Optional[int] = None
    google_search_enabled: bool = False
    code_execution_enabled: bool = False
    url_context_enabled: bool = False
    image_generation_enabled: bool = False
    video_generation_enabled: bool = False

    @field_validator("model_name")
    @classmethod
    def _remap_deprecated_model(cls, value: str) -> str:
        if value in DEPRECATED_MODELS:
            return DEFAULT_MODEL_NAME
        return value

    def touch(self, updates: Dict[str, Any], *, now: Optional[datetime] = None) -> "Conversation":
        """Return a copy with ``updates`` applied, bumping ``updated_at`` on real activity."""
        unknown = set(updates) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        changes = dict(updates)
        if "updated_at" not in changes and _TOUCHING_FIELDS.intersection(changes):
            changes["updated_at"] = now or utc_now()
        return self.model_validate({**self.model_dump(), **changes})


def title_from_text(text: str) -> str:
    text = text.strip()
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


@dataclass
class CompletionTurn:
    role: Role
    text: str
    media_url: Optional[str] = None
    media_mime_type: Optional[str] = None


@dataclass
class CompletionOptions:
    model_name: str = DEFAULT_MODEL_NAME
    system_instruction: Optional[str] = None
    api_key: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_output_tokens: Optional[int] = None
    thinking_budget: Optional[int] = None
    tools: Optional[Dict[str, bool]] = None
    signal: Optional[asyncio.Event] = None
