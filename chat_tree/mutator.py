"""Topology-changing branch operations.

Each operation reads one snapshot and returns a description of the store
writes it needs. Nothing here performs I/O; callers apply the operations to a
store and, optimistically, to their local snapshot via :func:`apply_operations`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

from chat_ai.types import Message, Role, utc_now

from .errors import (
    EmptyContentError,
    InvalidDirectionError,
    InvalidRoleError,
    MessageNotFoundError,
    StructuralInconsistencyError,
)
from .navigator import active_branch, ancestors_before, lineage, siblings, subtree_ids
from .tree import MessageTree, MessagesLike

_UPDATABLE_FIELDS = frozenset(Message.model_fields) - {"id"}


class Direction(str, Enum):
    PREVIOUS = "previous"
    NEXT = "next"


@dataclass(frozen=True)
class CreateMessage:
    message: Message


@dataclass(frozen=True)
class UpdateMessageFields:
    message_id: str
    fields: Dict[str, Any]

    def __post_init__(self) -> None:
        unknown = set(self.fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update message fields: {sorted(unknown)}")


@dataclass(frozen=True)
class DeleteMessages:
    ids: FrozenSet[str]


StoreOperation = Union[CreateMessage, UpdateMessageFields, DeleteMessages]


@dataclass
class RegeneratePlan:
    """A new assistant sibling to stream into, and the turns that prompt it."""

    source_id: str
    context_messages: List[Message]
    message: Message

    @property
    def parent_id(self) -> Optional[str]:
        return self.message.parent_id

    @property
    def role(self) -> Role:
        return self.message.role

    def operations(self) -> List[StoreOperation]:
        return [CreateMessage(self.message)]


@dataclass
class EditPlan:
    source_id: str
    context_messages: List[Message]
    message: Message

    @property
    def parent_id(self) -> Optional[str]:
        return self.message.parent_id

    @property
    def role(self) -> Role:
        return self.message.role

    @property
    def content(self) -> str:
        return self.message.content

    @property
    def turn_messages(self) -> List[Message]:
        return self.context_messages + [self.message]

    def operations(self) -> List[StoreOperation]:
        return [CreateMessage(self.message)]


@dataclass
class UserMessagePlan:
    context_messages: List[Message]
    message: Message

    @property
    def turn_messages(self) -> List[Message]:
        return self.context_messages + [self.message]

    def operations(self) -> List[StoreOperation]:
        return [CreateMessage(self.message)]


@dataclass(frozen=True)
class SiblingSelection:
    target_id: str
    selected_at: datetime = field(default_factory=utc_now)

    def operations(self) -> List[StoreOperation]:
        return [UpdateMessageFields(self.target_id, {"selected_at": self.selected_at})]


def _require(tree: MessageTree, message_id: str) -> Message:
    message = tree.get(message_id)
    if message is None:
        raise MessageNotFoundError(message_id)
    return message


def _require_role(message: Message, role: Role) -> None:
    if message.role is not role:
        raise InvalidRoleError(message.id, expected=role, actual=message.role)


def regenerate_from(
    messages: MessagesLike,
    assistant_message_id: str,
    *,
    now: Optional[datetime] = None,
) -> RegeneratePlan:
    tree = MessageTree.from_messages(messages)
    message = _require(tree, assistant_message_id)
    _require_role(message, Role.ASSISTANT)

    context: List[Message] = []
    if message.parent_id is not None:
        if message.parent_id not in tree:
            raise StructuralInconsistencyError(message.id, f"parent {message.parent_id} is not in the snapshot")
        context = ancestors_before(tree, assistant_message_id)
        # Off the active branch the prefix is empty; rebuild it from the parent chain.
        if not context or context[-1].id != message.parent_id:
            context = lineage(tree, message.parent_id)

    timestamp = now or utc_now()
    new_message = Message(
        role=Role.ASSISTANT,
        content="",
        parent_id=message.parent_id,
        created_at=timestamp,
        selected_at=timestamp,
    )
    return RegeneratePlan(source_id=message.id, context_messages=context, message=new_message)


def edit_and_resend(
    messages: MessagesLike,
    user_message_id: str,
    new_content: str,
    *,
    now: Optional[datetime] = None,
) -> EditPlan:
    tree = MessageTree.from_messages(messages)
    message = _require(tree, user_message_id)
    _require_role(message, Role.USER)
    if not new_content.strip():
        raise EmptyContentError()

    context = lineage(tree, message.parent_id) if message.parent_id is not None else []
    timestamp = now or utc_now()
    new_message = Message(
        role=Role.USER,
        content=new_content,
        parent_id=message.parent_id,
        created_at=timestamp,
        selected_at=timestamp,
    )
    return EditPlan(source_id=message.id, context_messages=context, message=new_message)


def plan_user_message(
    messages: MessagesLike,
    content: str,
    *,
    now: Optional[datetime] = None,
) -> UserMessagePlan:
    """Attach a newly typed user message to the end of the active branch.

    An unanswered user leaf gets the new message as a selected sibling so the
    branch keeps alternating roles.
    """
    content = content.strip()
    if not content:
        raise EmptyContentError()

    timestamp = now or utc_now()
    branch = active_branch(messages)
    parent_id: Optional[str] = None
    selected_at: Optional[datetime] = None
    context: List[Message] = []

    if branch:
        leaf = branch[-1]
        if leaf.role is Role.ASSISTANT:
            parent_id = leaf.id
            context = branch
        else:
            parent_id = leaf.parent_id
            selected_at = timestamp
            context = branch[:-1]

    new_message = Message(
        role=Role.USER,
        content=content,
        parent_id=parent_id,
        created_at=timestamp,
        selected_at=selected_at,
    )
    return UserMessagePlan(context_messages=context, message=new_message)


def select_sibling(
    messages: MessagesLike,
    message_id: str,
    direction: Union[Direction, str],
    *,
    now: Optional[datetime] = None,
) -> SiblingSelection:
    """Pick the alternate to activate.

    ``previous`` steps to the next lower-ranked sibling and ``next`` to the next
    higher-ranked one. At either end the current message is reaffirmed.
    """
    try:
        direction = Direction(direction)
    except ValueError as exc:
        raise InvalidDirectionError(direction) from exc
    tree = MessageTree.from_messages(messages)
    _require(tree, message_id)

    ordered = siblings(tree, message_id)
    index = next(i for i, message in enumerate(ordered) if message.id == message_id)
    target_index = index + 1 if direction is Direction.PREVIOUS else index - 1
    if not 0 <= target_index < len(ordered):
        target_index = index

    return SiblingSelection(target_id=ordered[target_index].id, selected_at=now or utc_now())


def truncate_after(messages: MessagesLike, message_id: str) -> FrozenSet[str]:
    tree = MessageTree.from_messages(messages)
    _require(tree, message_id)
    return frozenset(subtree_ids(tree, message_id))


def delete_branch(messages: MessagesLike, message_id: str) -> FrozenSet[str]:
    """Ids to delete when removing a message together with everything below it."""
    tree = MessageTree.from_messages(messages)
    _require(tree, message_id)
    return frozenset(subtree_ids(tree, message_id) | {message_id})


def apply_operations(messages: Iterable[Message], operations: Iterable[StoreOperation]) -> List[Message]:
    by_id: Dict[str, Message] = {}
    for message in messages:
        by_id[message.id] = message

    for operation in operations:
        if isinstance(operation, CreateMessage):
            by_id[operation.message.id] = operation.message
        elif isinstance(operation, UpdateMessageFields):
            current = by_id.get(operation.message_id)
            if current is not None:
                by_id[operation.message_id] = current.model_copy(update=operation.fields)
        elif isinstance(operation, DeleteMessages):
            for message_id in operation.ids:
                by_id.pop(message_id, None)
        else:
            raise TypeError(f"Unknown store operation: {operation!r}")

    return list(by_id.values())
