"""Result and state types for conversation sessions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from chat_ai.types import CompletionOptions, CompletionTurn
from chat_tree.errors import (
    BranchError,
    EmptyContentError,
    InvalidDirectionError,
    InvalidRoleError,
    MessageNotFoundError,
    StructuralInconsistencyError,
)


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_TOKEN = "awaiting_first_token"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    ERRORED = "errored"


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_ROLE = "invalid_role"
    STORE_WRITE_FAILURE = "store_write_failure"
    STREAM_FAILURE = "stream_failure"
    STRUCTURAL_INCONSISTENCY = "structural_inconsistency"
    STILL_GENERATING = "still_generating"
    EMPTY_CONTENT = "empty_content"
    INVALID_DIRECTION = "invalid_direction"


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    detail: str = ""


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    message_id: Optional[str] = None
    failure: Optional[Failure] = None

    @classmethod
    def success(cls, message_id: Optional[str] = None) -> "OperationResult":
        return cls(ok=True, message_id=message_id)

    @classmethod
    def failed(cls, kind: FailureKind, detail: str = "") -> "OperationResult":
        return cls(ok=False, failure=Failure(kind, detail))

    @classmethod
    def from_error(cls, exc: BranchError) -> "OperationResult":
        if isinstance(exc, MessageNotFoundError):
            kind = FailureKind.NOT_FOUND
        elif isinstance(exc, InvalidRoleError):
            kind = FailureKind.INVALID_ROLE
        elif isinstance(exc, EmptyContentError):
            kind = FailureKind.EMPTY_CONTENT
        elif isinstance(exc, InvalidDirectionError):
            kind = FailureKind.INVALID_DIRECTION
        elif isinstance(exc, StructuralInconsistencyError):
            kind = FailureKind.STRUCTURAL_INCONSISTENCY
        else:
            raise TypeError(f"Unmapped branch error: {exc!r}") from exc
        return cls.failed(kind, str(exc))


SessionEvent = Dict[str, Any]

StreamFn = Callable[[List[CompletionTurn], CompletionOptions], Any]
