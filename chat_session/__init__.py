"""Conversation session controller."""

from .config import SessionConfig
from .events import SessionEventStream
from .session import ConversationSession, SessionState
from .turn import TurnOutcome, append_error, fold_event, run_turn
from .types import Failure, FailureKind, OperationResult, SessionEvent, StreamFn, TurnState

__all__ = [
    "ConversationSession",
    "Failure",
    "FailureKind",
    "OperationResult",
    "SessionConfig",
    "SessionEvent",
    "SessionEventStream",
    "SessionState",
    "StreamFn",
    "TurnOutcome",
    "TurnState",
    "append_error",
    "fold_event",
    "run_turn",
]
