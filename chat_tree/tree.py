"""Snapshot index over a flat message collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Literal, Optional, Set, Union

from chat_ai.types import Message, Role

logger = logging.getLogger(__name__)

IssueKind = Literal["dangling_parent", "cycle", "duplicate_id"]


@dataclass(frozen=True)
class StructuralIssue:
    kind: IssueKind
    message_id: str
    detail: str


class MessageTree:
    """``parent_id -> children`` index built once per snapshot.

    Duplicate ids collapse to the last occurrence in the input. Children keep
    input order; callers apply their own ordering.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._nodes: Dict[str, Message] = {}
        self._children: Dict[Optional[str], List[str]] = {}
        self._duplicate_ids: List[str] = []

        for message in messages:
            if message.id in self._nodes:
                self._duplicate_ids.append(message.id)
            self._nodes[message.id] = message
        for message in self._nodes.values():
            self._children.setdefault(message.parent_id, []).append(message.id)

    @classmethod
    def from_messages(cls, messages: "MessagesLike") -> "MessageTree":
        if isinstance(messages, MessageTree):
            return messages
        return cls(messages)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._nodes

    def __iter__(self) -> Iterator[Message]:
        return iter(self._nodes.values())

    def get(self, message_id: Optional[str]) -> Optional[Message]:
        if message_id is None:
            return None
        return self._nodes.get(message_id)

    def messages(self) -> List[Message]:
        return list(self._nodes.values())

    def roots(self) -> List[Message]:
        return self.children(None)

    def children(self, parent_id: Optional[str], role: Optional[Role] = None) -> List[Message]:
        nodes = [self._nodes[child_id] for child_id in self._children.get(parent_id, [])]
        if role is None:
            return nodes
        return [node for node in nodes if node.role is role]

    def child_ids(self, parent_id: Optional[str]) -> List[str]:
        return list(self._children.get(parent_id, []))

    def issues(self) -> List[StructuralIssue]:
        issues: List[StructuralIssue] = [
            StructuralIssue("duplicate_id", message_id, "id appears more than once in the snapshot")
            for message_id in dict.fromkeys(self._duplicate_ids)
        ]

        for message in self._nodes.values():
            if message.parent_id is not None and message.parent_id not in self._nodes:
                issues.append(
                    StructuralIssue(
                        "dangling_parent",
                        message.id,
                        f"parent {message.parent_id} is not in the snapshot",
                    )
                )

        issues.extend(self._find_cycles())
        return issues

    def _find_cycles(self) -> List[StructuralIssue]:
        issues: List[StructuralIssue] = []
        settled: Set[str] = set()

        for start_id in self._nodes:
            if start_id in settled:
                continue
            path: List[str] = []
            on_path: Set[str] = set()
            current: Optional[str] = start_id
            while current is not None and current in self._nodes and current not in settled:
                if current in on_path:
                    cycle = path[path.index(current):]
                    issues.append(
                        StructuralIssue(
                            "cycle",
                            min(cycle),
                            "parent links form a cycle: " + " -> ".join(cycle + [current]),
                        )
                    )
                    break
                path.append(current)
                on_path.add(current)
                current = self._nodes[current].parent_id
            settled.update(path)

        return issues


MessagesLike = Union[MessageTree, Iterable[Message]]


def find_structural_issues(messages: MessagesLike) -> List[StructuralIssue]:
    return MessageTree.from_messages(messages).issues()


def log_structural_issues(messages: MessagesLike) -> List[StructuralIssue]:
    issues = find_structural_issues(messages)
    for issue in issues:
        logger.warning("Structural inconsistency (%s) at %s: %s", issue.kind, issue.message_id, issue.detail)
    return issues
