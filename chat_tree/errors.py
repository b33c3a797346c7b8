"""Errors raised by branch operations."""

from __future__ import annotations

from chat_ai.types import Role


class BranchError(Exception):
    """Base class for errors raised before a branch operation produces any effect."""


class MessageNotFoundError(BranchError, KeyError):
    def __init__(self, message_id: str) -> None:
        super().__init__(message_id)
        self.message_id = message_id

    def __str__(self) -> str:
        return f"Message not found: {self.message_id}"


class InvalidRoleError(BranchError, ValueError):
    def __init__(self, message_id: str, expected: Role, actual: Role) -> None:
        super().__init__(f"Message {message_id} has role {actual.value}, expected {expected.value}")
        self.message_id = message_id
        self.expected = expected
        self.actual = actual


class EmptyContentError(BranchError, ValueError):
    def __init__(self) -> None:
        super().__init__("Message content must not be empty")


class StructuralInconsistencyError(BranchError):
    def __init__(self, message_id: str, detail: str) -> None:
        super().__init__(f"Message {message_id}: {detail}")
        self.message_id = message_id
        self.detail = detail


class InvalidDirectionError(BranchError, ValueError):
    def __init__(self, direction: object) -> None:
        super().__init__(f"Unknown sibling direction: {direction!r}")
        self.direction = direction
