"""Pure queries over a conversation's message tree.

Every function accepts either a sequence of messages or a prebuilt
:class:`~chat_tree.tree.MessageTree`; pass the tree when making several calls
against the same snapshot.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

from chat_ai.types import Message

from .tree import MessageTree, MessagesLike

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BranchPosition:
    index: int
    count: int
    has_previous: bool
    has_next: bool


def selection_sort_key(message: Message) -> Tuple[bool, float, float, str]:
    """Rank siblings: latest selection first, never-selected last, then newest, then id."""
    selected_at = message.selected_at
    return (
        selected_at is None,
        -selected_at.timestamp() if selected_at is not None else 0.0,
        -message.created_at.timestamp(),
        message.id,
    )


def order_siblings(messages: Iterable[Message]) -> List[Message]:
    return sorted(messages, key=selection_sort_key)


def _pick_root(roots: List[Message]) -> Message:
    return min(roots, key=lambda message: (-message.created_at.timestamp(), message.id))


def active_branch(messages: MessagesLike) -> List[Message]:
    tree = MessageTree.from_messages(messages)
    roots = tree.roots()
    if not roots:
        return []

    current = _pick_root(roots)
    branch = [current]
    visited = {current.id}

    while True:
        children = tree.children(current.id, role=current.role.opposite)
        candidates = [child for child in children if child.id not in visited]
        if len(candidates) != len(children):
            logger.warning("Cycle detected below message %s; stopping descent", current.id)
        if not candidates:
            break
        current = order_siblings(candidates)[0]
        branch.append(current)
        visited.add(current.id)

    return branch


def siblings(messages: MessagesLike, message_id: str) -> List[Message]:
    tree = MessageTree.from_messages(messages)
    message = tree.get(message_id)
    if message is None:
        return []
    return order_siblings(tree.children(message.parent_id, role=message.role))


def branch_position(messages: MessagesLike, message_id: str) -> Optional[BranchPosition]:
    ordered = siblings(messages, message_id)
    if len(ordered) <= 1:
        return None

    index = next(i for i, message in enumerate(ordered) if message.id == message_id)
    return BranchPosition(
        index=index,
        count=len(ordered),
        has_previous=index < len(ordered) - 1,
        has_next=index > 0,
    )


def ancestors_before(messages: MessagesLike, message_id: str) -> List[Message]:
    branch = active_branch(messages)
    for index, message in enumerate(branch):
        if message.id == message_id:
            return branch[:index]
    return []


def lineage(messages: MessagesLike, message_id: str) -> List[Message]:
    """Root-to-node path found by following ``parent_id`` upwards."""
    tree = MessageTree.from_messages(messages)
    chain: List[Message] = []
    seen: Set[str] = set()
    current = tree.get(message_id)

    while current is not None:
        if current.id in seen:
            logger.warning("Cycle detected above message %s; truncating lineage", message_id)
            break
        chain.append(current)
        seen.add(current.id)
        if current.parent_id is not None and current.parent_id not in tree:
            logger.warning("Message %s references missing parent %s", current.id, current.parent_id)
        current = tree.get(current.parent_id)

    chain.reverse()
    return chain


def subtree_ids(messages: MessagesLike, parent_id: str) -> Set[str]:
    tree = MessageTree.from_messages(messages)
    ids: Set[str] = set()
    queue = deque(tree.child_ids(parent_id))

    while queue:
        next_id = queue.popleft()
        if next_id in ids or next_id == parent_id:
            continue
        ids.add(next_id)
        queue.extend(tree.child_ids(next_id))

    return ids
