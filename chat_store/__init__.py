"""Message store contracts and reference implementations."""

from .base import (
    DELETE_BATCH_SIZE,
    ConversationStore,
    MessageStore,
    OnChange,
    StoreWriteError,
    Unsubscribe,
)
from .jsonl import JsonlStore
from .memory import InMemoryStore

__all__ = [
    "DELETE_BATCH_SIZE",
    "ConversationStore",
    "InMemoryStore",
    "JsonlStore",
    "MessageStore",
    "OnChange",
    "StoreWriteError",
    "Unsubscribe",
]
