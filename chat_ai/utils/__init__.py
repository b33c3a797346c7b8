"""Utility helpers for chat_ai."""

from .serialization import (
    conversation_from_record,
    conversation_to_record,
    fields_from_record,
    fields_to_record,
    message_from_record,
    message_to_record,
)

__all__ = [
    "conversation_from_record",
    "conversation_to_record",
    "fields_from_record",
    "fields_to_record",
    "message_from_record",
    "message_to_record",
]
