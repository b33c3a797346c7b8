"""Store contracts and the snapshot change feed shared by store implementations."""

from __future__ import annotations

import logging
from typing import (
    AbstractSet,
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from chat_ai.types import Conversation, Message

logger = logging.getLogger(__name__)

OnChange = Callable[[List[Message]], None]
Unsubscribe = Callable[[], None]

# Document stores cap a single batched write at this many deletes.
DELETE_BATCH_SIZE = 500


class StoreWriteError(RuntimeError):
    """Raised when a store rejects a create, update, or delete."""


@runtime_checkable
class MessageStore(Protocol):
    def subscribe(self, conversation_id: str, on_change: OnChange) -> Unsubscribe:
        ...

    async def create_message(self, conversation_id: str, message: Message) -> None:
        ...

    async def update_message_fields(self, conversation_id: str, message_id: str, fields: Dict[str, Any]) -> None:
        ...

    async def delete_messages(self, conversation_id: str, ids: AbstractSet[str]) -> None:
        ...


@runtime_checkable
class ConversationStore(Protocol):
    async def create_conversation(self, conversation: Conversation) -> None:
        ...

    async def update_conversation(self, conversation_id: str, updates: Dict[str, Any]) -> Conversation:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    async def list_conversations(self, *, include_archived: bool = False) -> List[Conversation]:
        ...


def batched(ids: Iterable[str], size: int = DELETE_BATCH_SIZE) -> Iterator[List[str]]:
    batch: List[str] = []
    for message_id in ids:
        batch.append(message_id)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def sort_conversations(conversations: Iterable[Conversation], *, include_archived: bool = False) -> List[Conversation]:
    visible = [c for c in conversations if include_archived or not c.is_archived]
    return sorted(visible, key=lambda c: (not c.is_pinned, -c.updated_at.timestamp()))


class SnapshotFeed:
    """Per-conversation listeners that always receive the full message set."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[OnChange]] = {}

    def subscribe(self, conversation_id: str, on_change: OnChange, snapshot: List[Message]) -> Unsubscribe:
        listeners = self._listeners.setdefault(conversation_id, [])
        listeners.append(on_change)
        on_change(list(snapshot))

        def unsubscribe() -> None:
            current = self._listeners.get(conversation_id, [])
            if on_change in current:
                current.remove(on_change)

        return unsubscribe

    def listener_count(self, conversation_id: str) -> int:
        return len(self._listeners.get(conversation_id, []))

    def publish(self, conversation_id: str, snapshot: List[Message]) -> None:
        for listener in list(self._listeners.get(conversation_id, [])):
            try:
                listener(list(snapshot))
            except Exception:
                logger.exception("Snapshot listener failed for conversation %s", conversation_id)


def ordered_snapshot(messages: Iterable[Message]) -> List[Message]:
    return sorted(messages, key=lambda message: message.created_at.timestamp())
