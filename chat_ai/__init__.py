"""Message model and completion contracts for branching chat."""

from .payload import build_turns
from .streaming import CompletionEventStream
from .types import (
    CompletionOptions,
    CompletionTurn,
    Conversation,
    Message,
    Role,
    create_assistant_message,
    create_user_message,
    title_from_text,
)

__all__ = [
    "CompletionEventStream",
    "CompletionOptions",
    "CompletionTurn",
    "Conversation",
    "Message",
    "Role",
    "build_turns",
    "create_assistant_message",
    "create_user_message",
    "title_from_text",
]
