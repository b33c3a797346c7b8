"""In-memory message and conversation store."""

from __future__ import annotations

import logging
from typing import AbstractSet, Any, Dict, List, Optional, Set

from chat_ai.types import Conversation, Message
from chat_tree.mutator import DeleteMessages, UpdateMessageFields, apply_operations

from .base import (
    DELETE_BATCH_SIZE,
    OnChange,
    SnapshotFeed,
    StoreWriteError,
    Unsubscribe,
    batched,
    ordered_snapshot,
    sort_conversations,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Message and conversation store kept in process memory.

    With ``manual_delivery=True`` writes are applied immediately but listeners
    are only notified on :meth:`deliver`, which lets callers observe state
    between a write and its confirmation.
    """

    def __init__(self, *, manual_delivery: bool = False, delete_batch_size: int = DELETE_BATCH_SIZE) -> None:
        self._messages: Dict[str, Dict[str, Message]] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._feed = SnapshotFeed()
        self._manual_delivery = manual_delivery
        self._pending_delivery: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._delete_batch_size = delete_batch_size
        self.delete_batches: List[List[str]] = []

    def inject_failure(self, operation: str, count: int = 1) -> None:
        """Make the next ``count`` calls to ``operation`` raise :class:`StoreWriteError`."""
        self._failures[operation] = self._failures.get(operation, 0) + count

    def _check_failure(self, operation: str) -> None:
        remaining = self._failures.get(operation, 0)
        if remaining > 0:
            self._failures[operation] = remaining - 1
            raise StoreWriteError(f"{operation} rejected by store")

    def messages(self, conversation_id: str) -> List[Message]:
        return ordered_snapshot(self._messages.get(conversation_id, {}).values())

    def listener_count(self, conversation_id: str) -> int:
        return self._feed.listener_count(conversation_id)

    def subscribe(self, conversation_id: str, on_change: OnChange) -> Unsubscribe:
        return self._feed.subscribe(conversation_id, on_change, self.messages(conversation_id))

    def deliver(self, conversation_id: Optional[str] = None) -> None:
        targets = [conversation_id] if conversation_id is not None else sorted(self._pending_delivery)
        for target in targets:
            self._pending_delivery.discard(target)
            self._feed.publish(target, self.messages(target))

    def publish(self, conversation_id: str, snapshot: List[Message]) -> None:
        """Deliver ``snapshot`` to listeners as given, such as one delayed in transit."""
        self._feed.publish(conversation_id, list(snapshot))

    def _changed(self, conversation_id: str) -> None:
        if self._manual_delivery:
            self._pending_delivery.add(conversation_id)
        else:
            self._feed.publish(conversation_id, self.messages(conversation_id))

    def seed(self, conversation_id: str, messages: List[Message]) -> None:
        bucket = self._messages.setdefault(conversation_id, {})
        for message in messages:
            bucket[message.id] = message
        self._changed(conversation_id)

    async def create_message(self, conversation_id: str, message: Message) -> None:
        self._check_failure("create_message")
        bucket = self._messages.setdefault(conversation_id, {})
        bucket[message.id] = message
        self._changed(conversation_id)

    async def update_message_fields(self, conversation_id: str, message_id: str, fields: Dict[str, Any]) -> None:
        self._check_failure("update_message_fields")
        bucket = self._messages.get(conversation_id, {})
        if message_id not in bucket:
            raise StoreWriteError(f"Message not found: {message_id}")
        updated = apply_operations(bucket.values(), [UpdateMessageFields(message_id, dict(fields))])
        bucket[message_id] = next(message for message in updated if message.id == message_id)
        self._changed(conversation_id)

    async def delete_messages(self, conversation_id: str, ids: AbstractSet[str]) -> None:
        self._check_failure("delete_messages")
        bucket = self._messages.get(conversation_id, {})
        for batch in batched(sorted(ids), self._delete_batch_size):
            self.delete_batches.append(batch)
            remaining = apply_operations(bucket.values(), [DeleteMessages(frozenset(batch))])
            bucket.clear()
            bucket.update((message.id, message) for message in remaining)
        logger.debug("Deleted %d messages from conversation %s", len(ids), conversation_id)
        self._changed(conversation_id)

    async def create_conversation(self, conversation: Conversation) -> None:
        self._check_failure("create_conversation")
        self._conversations[conversation.id] = conversation

    async def update_conversation(self, conversation_id: str, updates: Dict[str, Any]) -> Conversation:
        self._check_failure("update_conversation")
        current = self._conversations.get(conversation_id)
        if current is None:
            raise StoreWriteError(f"Conversation not found: {conversation_id}")
        updated = current.touch(updates)
        self._conversations[conversation_id] = updated
        return updated

    async def delete_conversation(self, conversation_id: str) -> None:
        self._check_failure("delete_conversation")
        self._conversations.pop(conversation_id, None)
        if self._messages.pop(conversation_id, None) is not None:
            self._changed(conversation_id)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    async def list_conversations(self, *, include_archived: bool = False) -> List[Conversation]:
        return sort_conversations(self._conversations.values(), include_archived=include_archived)
