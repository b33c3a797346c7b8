"""Serialization helpers for store records.

Stores keep camelCase records with ISO-8601 timestamps and write the assistant
role as ``"model"``, the name the completion API uses for it.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Optional

from ..types import Conversation, Message, Role

_ROLE_TO_RECORD = {Role.USER: "user", Role.ASSISTANT: "model"}
_ROLE_FROM_RECORD = {"user": Role.USER, "model": Role.ASSISTANT, "assistant": Role.ASSISTANT}

_DATETIME_FIELDS = frozenset({"created_at", "selected_at", "updated_at"})

# Acronym spellings used by the record format.
_KEY_OVERRIDES = {"media_url": "mediaURL"}
_KEY_OVERRIDES_REVERSED = {value: key for key, value in _KEY_OVERRIDES.items()}


def to_camel_key(key: str) -> str:
    if key in _KEY_OVERRIDES:
        return _KEY_OVERRIDES[key]
    if "_" not in key:
        return key
    parts = [part for part in key.split("_") if part]
    if not parts:
        return key
    return parts[0] + "".join(part[:1].upper() + part[1:] for part in parts[1:])


def to_snake_key(key: str) -> str:
    if key in _KEY_OVERRIDES_REVERSED:
        return _KEY_OVERRIDES_REVERSED[key]
    if "_" in key:
        return key
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", key)
    s2 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1)
    return s2.lower()


def _encode_value(key: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Role):
        return _ROLE_TO_RECORD[value]
    return value


def _decode_value(key: str, value: Any) -> Any:
    if key in _DATETIME_FIELDS and isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


def decode_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    role = _ROLE_FROM_RECORD.get(value)
    if role is None:
        raise ValueError(f"Unknown message role: {value!r}")
    return role


def fields_to_record(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {to_camel_key(key): _encode_value(key, value) for key, value in fields.items()}


def fields_from_record(record: Dict[str, Any]) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for key, value in record.items():
        snake = to_snake_key(key)
        fields[snake] = decode_role(value) if snake == "role" else _decode_value(snake, value)
    return fields


def message_to_record(message: Message) -> Dict[str, Any]:
    return fields_to_record(message.model_dump())


def message_from_record(record: Dict[str, Any], message_id: Optional[str] = None) -> Message:
    fields = fields_from_record(record)
    if message_id is not None:
        fields["id"] = message_id
    return Message.model_validate(fields)


def conversation_to_record(conversation: Conversation) -> Dict[str, Any]:
    return fields_to_record(conversation.model_dump())


def conversation_from_record(record: Dict[str, Any]) -> Conversation:
    return Conversation.model_validate(fields_from_record(record))
