"""JSONL-backed message and conversation store.

Each conversation lives in ``<root>/<conversation_id>.jsonl``. The first line is
the conversation header; every following line records one write and the
current state is rebuilt by replaying them in order.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import AbstractSet, Any, Dict, List, Optional

from chat_ai.types import Conversation, Message
from chat_ai.utils.serialization import (
    conversation_from_record,
    conversation_to_record,
    fields_from_record,
    fields_to_record,
    message_from_record,
    message_to_record,
)
from chat_tree.mutator import (
    CreateMessage,
    DeleteMessages,
    StoreOperation,
    UpdateMessageFields,
    apply_operations,
)

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

CURRENT_STORE_VERSION = 1


class JsonlStore:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._feed = SnapshotFeed()
        self._cache: Dict[str, Dict[str, Any]] = {}

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, conversation_id: str) -> Path:
        return self._root / f"{conversation_id}.jsonl"

    def messages(self, conversation_id: str) -> List[Message]:
        return ordered_snapshot(self._load(conversation_id)["messages"].values())

    def subscribe(self, conversation_id: str, on_change: OnChange) -> Unsubscribe:
        return self._feed.subscribe(conversation_id, on_change, self.messages(conversation_id))

    async def create_message(self, conversation_id: str, message: Message) -> None:
        self._commit(
            conversation_id,
            {"type": "message", "message": message_to_record(message)},
            [CreateMessage(message)],
        )

    async def update_message_fields(self, conversation_id: str, message_id: str, fields: Dict[str, Any]) -> None:
        if message_id not in self._load(conversation_id)["messages"]:
            raise StoreWriteError(f"Message not found: {message_id}")
        self._commit(
            conversation_id,
            {"type": "update", "id": message_id, "fields": fields_to_record(fields)},
            [UpdateMessageFields(message_id, dict(fields))],
        )

    async def delete_messages(self, conversation_id: str, ids: AbstractSet[str]) -> None:
        for batch in batched(sorted(ids), DELETE_BATCH_SIZE):
            self._commit(
                conversation_id,
                {"type": "delete", "ids": batch},
                [DeleteMessages(frozenset(batch))],
                notify=False,
            )
        self._feed.publish(conversation_id, self.messages(conversation_id))

    async def create_conversation(self, conversation: Conversation) -> None:
        path = self.path_for(conversation.id)
        if path.exists():
            raise StoreWriteError(f"Conversation already exists: {conversation.id}")
        header = {
            "type": "conversation",
            "version": CURRENT_STORE_VERSION,
            "conversation": conversation_to_record(conversation),
        }
        self._write_line(path, header)
        self._cache[conversation.id] = {"conversation": conversation, "messages": {}}

    async def update_conversation(self, conversation_id: str, updates: Dict[str, Any]) -> Conversation:
        state = self._load(conversation_id)
        current: Optional[Conversation] = state["conversation"]
        if current is None:
            raise StoreWriteError(f"Conversation not found: {conversation_id}")
        updated = current.touch(updates)
        changed = {key: value for key, value in updated.model_dump().items() if getattr(current, key) != value}
        self._write_line(
            self.path_for(conversation_id),
            {"type": "conversation_update", "fields": fields_to_record(changed)},
        )
        state["conversation"] = updated
        return updated

    async def delete_conversation(self, conversation_id: str) -> None:
        path = self.path_for(conversation_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StoreWriteError(f"Failed to delete conversation {conversation_id}: {exc}") from exc
        self._cache.pop(conversation_id, None)
        self._feed.publish(conversation_id, [])

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._load(conversation_id)["conversation"]

    async def list_conversations(self, *, include_archived: bool = False) -> List[Conversation]:
        conversations: List[Conversation] = []
        for path in sorted(self._root.glob("*.jsonl")):
            conversation = self._load(path.stem)["conversation"]
            if conversation is not None:
                conversations.append(conversation)
        return sort_conversations(conversations, include_archived=include_archived)

    def _commit(
        self,
        conversation_id: str,
        line: Dict[str, Any],
        operations: List[StoreOperation],
        *,
        notify: bool = True,
    ) -> None:
        state = self._load(conversation_id)
        self._write_line(self.path_for(conversation_id), line)
        remaining = apply_operations(state["messages"].values(), operations)
        state["messages"] = {message.id: message for message in remaining}
        if notify:
            self._feed.publish(conversation_id, self.messages(conversation_id))

    def _load(self, conversation_id: str) -> Dict[str, Any]:
        if conversation_id in self._cache:
            return self._cache[conversation_id]

        state: Dict[str, Any] = {"conversation": None, "messages": {}}
        path = self.path_for(conversation_id)
        if path.exists():
            with path.open("r", encoding="utf-8") as handle:
                for line_number, line in enumerate(handle, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        self._replay(state, json.loads(line))
                    except ValueError as exc:
                        logger.warning("Skipping unreadable line %d in %s: %s", line_number, path, exc)

        self._cache[conversation_id] = state
        return state

    def _replay(self, state: Dict[str, Any], data: Dict[str, Any]) -> None:
        entry_type = data.get("type")
        messages: Dict[str, Message] = state["messages"]

        if entry_type == "conversation":
            state["conversation"] = conversation_from_record(data.get("conversation", {}))
        elif entry_type == "conversation_update":
            if state["conversation"] is not None:
                state["conversation"] = state["conversation"].touch(fields_from_record(data.get("fields", {})))
        elif entry_type == "message":
            message = message_from_record(data["message"])
            messages[message.id] = message
        elif entry_type == "update":
            operation = UpdateMessageFields(data["id"], fields_from_record(data.get("fields", {})))
            state["messages"] = {m.id: m for m in apply_operations(messages.values(), [operation])}
        elif entry_type == "delete":
            for message_id in data.get("ids", []):
                messages.pop(message_id, None)
        else:
            raise ValueError(f"Unknown entry type: {entry_type!r}")

    def _write_line(self, path: Path, data: Dict[str, Any]) -> None:
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(data) + "\n")
        except OSError as exc:
            raise StoreWriteError(f"Failed to write {path}: {exc}") from exc
