"""Branching conversation tree: navigation and topology edits."""

from .errors import (
    BranchError,
    EmptyContentError,
    InvalidDirectionError,
    InvalidRoleError,
    MessageNotFoundError,
    StructuralInconsistencyError,
)
from .mutator import (
    CreateMessage,
    DeleteMessages,
    Direction,
    EditPlan,
    RegeneratePlan,
    SiblingSelection,
    StoreOperation,
    UpdateMessageFields,
    UserMessagePlan,
    apply_operations,
    delete_branch,
    edit_and_resend,
    plan_user_message,
    regenerate_from,
    select_sibling,
    truncate_after,
)
from .navigator import (
    BranchPosition,
    active_branch,
    ancestors_before,
    branch_position,
    lineage,
    order_siblings,
    siblings,
    subtree_ids,
)
from .tree import MessageTree, StructuralIssue, find_structural_issues, log_structural_issues

__all__ = [
    "BranchError",
    "BranchPosition",
    "CreateMessage",
    "DeleteMessages",
    "Direction",
    "EditPlan",
    "EmptyContentError",
    "InvalidDirectionError",
    "InvalidRoleError",
    "MessageNotFoundError",
    "MessageTree",
    "RegeneratePlan",
    "SiblingSelection",
    "StoreOperation",
    "StructuralInconsistencyError",
    "StructuralIssue",
    "UpdateMessageFields",
    "UserMessagePlan",
    "active_branch",
    "ancestors_before",
    "apply_operations",
    "branch_position",
    "delete_branch",
    "edit_and_resend",
    "find_structural_issues",
    "lineage",
    "log_structural_issues",
    "order_siblings",
    "plan_user_message",
    "regenerate_from",
    "select_sibling",
    "siblings",
    "subtree_ids",
    "truncate_after",
]
