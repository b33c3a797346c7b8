"""Conversation session: live snapshot, optimistic edits, and completion turns."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from chat_ai.payload import build_turns
from chat_ai.types import DEFAULT_TITLE, Conversation, Message, Role, title_from_text, utc_now
from chat_store.base import ConversationStore, MessageStore, Unsubscribe
from chat_tree.errors import BranchError
from chat_tree.mutator import (
    CreateMessage,
    DeleteMessages,
    Direction,
    StoreOperation,
    UpdateMessageFields,
    apply_operations,
    delete_branch,
    edit_and_resend,
    plan_user_message,
    regenerate_from,
    select_sibling,
    truncate_after,
)
from chat_tree.navigator import BranchPosition, active_branch, branch_position
from chat_tree.tree import MessageTree, StructuralIssue, log_structural_issues

from .config import SessionConfig
from .events import SessionEventStream
from .turn import TurnOutcome, run_turn
from .types import FailureKind, OperationResult, SessionEvent, StreamFn, TurnState

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _PendingWrite:
    operations: List[StoreOperation]

    def confirmed_by(self, snapshot: Dict[str, Message]) -> bool:
        for operation in self.operations:
            if isinstance(operation, CreateMessage):
                if operation.message.id not in snapshot:
                    return False
            elif isinstance(operation, UpdateMessageFields):
                current = snapshot.get(operation.message_id)
                if current is not None and any(
                    getattr(current, key) != value for key, value in operation.fields.items()
                ):
                    return False
            elif isinstance(operation, DeleteMessages):
                if any(message_id in snapshot for message_id in operation.ids):
                    return False
        return True


@dataclass
class SessionState:
    conversation: Conversation
    messages: List[Message] = field(default_factory=list)
    active_branch: List[Message] = field(default_factory=list)
    turn_state: TurnState = TurnState.IDLE
    streaming_message: Optional[Message] = None
    issues: List[StructuralIssue] = field(default_factory=list)
    error: Optional[str] = None


class ConversationSession:
    """Owns the rendered view of one conversation.

    The store is the owner of record; this class keeps the latest snapshot it
    delivered, overlays local writes that the store has not confirmed yet, and
    runs at most one completion turn at a time.
    """

    def __init__(
        self,
        store: MessageStore,
        conversation: Union[Conversation, str],
        stream_fn: StreamFn,
        *,
        conversation_store: Optional[ConversationStore] = None,
        config: Optional[SessionConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if isinstance(conversation, str):
            conversation = Conversation(id=conversation)
        self._store = store
        self._conversation_store = conversation_store
        self._stream_fn = stream_fn
        self._config = config or SessionConfig.from_conversation(conversation)
        self._clock = clock or utc_now

        self._state = SessionState(conversation=conversation)
        self._remote: List[Message] = []
        self._pending: List[_PendingWrite] = []
        self._tree = MessageTree()
        self._listeners: Set[Callable[[SessionEvent], None]] = set()
        self._streams: List[SessionEventStream] = []
        self._unsubscribe: Optional[Unsubscribe] = None
        self._closed = False
        self._generating = False
        self._abort_event: Optional[asyncio.Event] = None
        self._running_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def conversation(self) -> Conversation:
        return self._state.conversation

    @property
    def conversation_id(self) -> str:
        return self._state.conversation.id

    @property
    def messages(self) -> List[Message]:
        return list(self._state.messages)

    @property
    def active_branch(self) -> List[Message]:
        return list(self._state.active_branch)

    @property
    def tree(self) -> MessageTree:
        return self._tree

    @property
    def is_generating(self) -> bool:
        return self._generating

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None

    def branch_position(self, message_id: str) -> Optional[BranchPosition]:
        return branch_position(self._tree, message_id)

    def subscribe(self, fn: Callable[[SessionEvent], None]) -> Callable[[], None]:
        self._listeners.add(fn)

        def unsubscribe() -> None:
            self._listeners.discard(fn)

        return unsubscribe

    def events(self) -> SessionEventStream:
        stream = SessionEventStream()
        stream.attach(self.subscribe(stream.push))
        if self._closed:
            stream.end()
        else:
            self._streams.append(stream)
        return stream

    def open(self) -> None:
        if self._closed:
            raise RuntimeError("Session is closed.")
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self._store.subscribe(self.conversation_id, self._on_snapshot)

    async def close(self) -> None:
        if self._closed:
            return
        self.stop_generating()
        await self.wait_for_idle()
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
        self._closed = True
        self._emit({"type": "closed"})
        for stream in self._streams:
            stream.end()
        self._streams.clear()
        self._listeners.clear()

    async def __aenter__(self) -> "ConversationSession":
        self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def stop_generating(self) -> None:
        if self._abort_event is not None:
            self._abort_event.set()

    async def wait_for_idle(self) -> None:
        if self._running_task is not None:
            await self._running_task

    async def send_user_message(self, text: str) -> OperationResult:
        if self._generating:
            return self._still_generating()
        self._generating = True
        try:
            plan = plan_user_message(self._tree, text, now=self._clock())
        except BranchError as exc:
            self._generating = False
            return self._failed(OperationResult.from_error(exc))

        result = await self._prepare_conversation(plan.message.content)
        if result.ok:
            result = await self._write(plan.operations())
        if not result.ok:
            self._generating = False
            return result

        assistant = Message(role=Role.ASSISTANT, parent_id=plan.message.id, created_at=self._clock())
        return self._start_turn(assistant, plan.turn_messages)

    async def regenerate(self, assistant_message_id: str) -> OperationResult:
        if self._generating:
            return self._still_generating()
        self._generating = True
        try:
            plan = regenerate_from(self._tree, assistant_message_id, now=self._clock())
        except BranchError as exc:
            self._generating = False
            return self._failed(OperationResult.from_error(exc))
        return self._start_turn(plan.message, plan.context_messages)

    async def edit_and_resend(self, user_message_id: str, new_text: str) -> OperationResult:
        if self._generating:
            return self._still_generating()
        self._generating = True
        try:
            plan = edit_and_resend(self._tree, user_message_id, new_text, now=self._clock())
        except BranchError as exc:
            self._generating = False
            return self._failed(OperationResult.from_error(exc))

        result = await self._write(plan.operations())
        if not result.ok:
            self._generating = False
            return result

        assistant = Message(role=Role.ASSISTANT, parent_id=plan.message.id, created_at=self._clock())
        return self._start_turn(assistant, plan.turn_messages)

    async def switch_branch(self, message_id: str, direction: Union[Direction, str]) -> OperationResult:
        try:
            selection = select_sibling(self._tree, message_id, direction, now=self._clock())
        except BranchError as exc:
            return self._failed(OperationResult.from_error(exc))

        result = await self._write(selection.operations())
        if not result.ok:
            return result
        return OperationResult.success(selection.target_id)

    async def truncate_after(self, message_id: str) -> OperationResult:
        if self._generating:
            return self._still_generating()
        try:
            ids = truncate_after(self._tree, message_id)
        except BranchError as exc:
            return self._failed(OperationResult.from_error(exc))
        return await self._delete(message_id, ids)

    async def delete_branch(self, message_id: str) -> OperationResult:
        if self._generating:
            return self._still_generating()
        try:
            ids = delete_branch(self._tree, message_id)
        except BranchError as exc:
            return self._failed(OperationResult.from_error(exc))
        return await self._delete(message_id, ids)

    async def _delete(self, message_id: str, ids: frozenset) -> OperationResult:
        if ids:
            result = await self._write([DeleteMessages(ids)])
            if not result.ok:
                return result
        return OperationResult.success(message_id)

    def _start_turn(self, message: Message, context: Sequence[Message]) -> OperationResult:
        self._abort_event = asyncio.Event()
        self._state.error = None
        options = self._config.completion_options(signal=self._abort_event)
        turns = build_turns(context, include_media=self._config.include_media)

        self._state.streaming_message = message
        self._state.turn_state = TurnState.AWAITING_FIRST_TOKEN
        self._refresh()
        self._emit({"type": "turn_start", "message": message})

        self._running_task = asyncio.create_task(self._run_turn(message, turns, options))
        return OperationResult.success(message.id)

    async def _run_turn(self, message: Message, turns: List[Any], options: Any) -> None:
        try:
            outcome = await run_turn(message, turns, options, self._stream_fn, self._on_turn_update)
            await self._finish_turn(outcome)
        finally:
            self._state.streaming_message = None
            self._abort_event = None
            self._generating = False

    async def _finish_turn(self, outcome: TurnOutcome) -> None:
        self._state.streaming_message = None
        self._state.turn_state = outcome.state
        self._state.error = outcome.error

        persisted = False
        if outcome.message.has_persistable_content:
            result = await self._write([CreateMessage(outcome.message)])
            persisted = result.ok
        else:
            logger.info("Dropping turn %s with no content", outcome.message.id)
            self._refresh()

        event: SessionEvent = {
            "type": "turn_end",
            "message": outcome.message,
            "state": outcome.state,
            "persisted": persisted,
            "cancelled": outcome.cancelled,
        }
        if outcome.error is not None:
            event["failure"] = OperationResult.failed(FailureKind.STREAM_FAILURE, outcome.error).failure
        self._emit(event)

        if persisted:
            await self._update_conversation({"updated_at": self._clock()})

    def _on_turn_update(self, message: Message, state: TurnState) -> None:
        self._state.streaming_message = message
        self._state.turn_state = state
        self._refresh()
        self._emit({"type": "turn_update", "message": message, "state": state})

    def _on_snapshot(self, messages: List[Message]) -> None:
        self._remote = list(messages)
        snapshot = {message.id: message for message in self._remote}
        self._pending = [
            pending
            for pending in self._pending
            if not pending.confirmed_by(snapshot)
        ]
        self._state.issues = log_structural_issues(self._remote)
        self._refresh()

    def _refresh(self) -> None:
        operations = [operation for pending in self._pending for operation in pending.operations]
        messages = apply_operations(self._remote, operations)
        streaming = self._state.streaming_message
        if streaming is not None:
            messages = apply_operations(messages, [CreateMessage(streaming)])

        self._tree = MessageTree(messages)
        self._state.messages = self._tree.messages()
        self._state.active_branch = active_branch(self._tree)
        self._emit(
            {
                "type": "snapshot",
                "messages": self._state.messages,
                "active_branch": self._state.active_branch,
            }
        )

    async def _write(self, operations: List[StoreOperation]) -> OperationResult:
        pending = _PendingWrite(list(operations))
        self._pending.append(pending)
        self._refresh()

        try:
            for operation in operations:
                await self._apply_to_store(operation)
        except Exception as exc:
            logger.warning("Store write failed for conversation %s: %s", self.conversation_id, exc)
            if pending in self._pending:
                self._pending.remove(pending)
            self._refresh()
            return self._failed(OperationResult.failed(FailureKind.STORE_WRITE_FAILURE, str(exc)))

        return OperationResult.success()

    async def _apply_to_store(self, operation: StoreOperation) -> None:
        if isinstance(operation, CreateMessage):
            await self._store.create_message(self.conversation_id, operation.message)
        elif isinstance(operation, UpdateMessageFields):
            await self._store.update_message_fields(self.conversation_id, operation.message_id, operation.fields)
        elif isinstance(operation, DeleteMessages):
            await self._store.delete_messages(self.conversation_id, set(operation.ids))
        else:
            raise TypeError(f"Unknown store operation: {operation!r}")

    async def _prepare_conversation(self, first_text: str) -> OperationResult:
        previous = self._state.conversation
        updates: Dict[str, Any] = {"updated_at": self._clock()}
        if previous.title == DEFAULT_TITLE:
            updates["title"] = title_from_text(first_text)
        self._state.conversation = previous.touch(updates)

        if self._conversation_store is None:
            return OperationResult.success()
        try:
            if await self._conversation_store.get_conversation(self.conversation_id) is None:
                await self._conversation_store.create_conversation(self._state.conversation)
            else:
                await self._conversation_store.update_conversation(self.conversation_id, updates)
        except Exception as exc:
            logger.warning("Failed to save conversation %s: %s", self.conversation_id, exc)
            self._state.conversation = previous
            return self._failed(OperationResult.failed(FailureKind.STORE_WRITE_FAILURE, str(exc)))
        return OperationResult.success()

    async def _update_conversation(self, updates: Dict[str, Any]) -> None:
        self._state.conversation = self._state.conversation.touch(updates)
        if self._conversation_store is None:
            return
        try:
            await self._conversation_store.update_conversation(self.conversation_id, updates)
        except Exception as exc:
            logger.warning("Failed to update conversation %s: %s", self.conversation_id, exc)

    def _still_generating(self) -> OperationResult:
        return self._failed(OperationResult.failed(FailureKind.STILL_GENERATING, "A response is still generating."))

    def _failed(self, result: OperationResult) -> OperationResult:
        if result.failure is not None:
            self._state.error = result.failure.detail or result.failure.kind.value
            self._emit({"type": "operation_failed", "failure": result.failure})
        return result

    def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            listener(event)
