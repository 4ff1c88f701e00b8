"""Typed errors raised by the orchestration core.

Every error carries a stable ``code`` so a request layer can map it to a
response without string matching on messages.
"""

from __future__ import annotations

from typing import Any, Optional


ERROR_MESSAGES: dict[str, str] = {
    "WORKSPACE_NOT_FOUND": "Workspace does not exist",
    "NODE_NOT_FOUND": "Node does not exist",
    "PARENT_NOT_FOUND": "Parent node does not exist",
    "CANNOT_DELETE_ROOT": "The root node cannot be deleted",
    "INVALID_PARAMS": "Invalid parameters",
    "INVALID_NODE_TYPE": "Node type must be planning or execution",
    "INVALID_TRANSITION": "Transition is not allowed from the current status",
    "CONCLUSION_REQUIRED": "complete/fail/cancel require a conclusion",
    "EXECUTION_CANNOT_HAVE_CHILDREN": "Execution nodes cannot have children",
    "INVALID_PARENT_STATUS": "Parent status does not allow new children",
    "INCOMPLETE_CHILDREN": "Some children are not in a terminal state",
    "REFERENCE_NOT_FOUND": "Reference does not exist",
    "REFERENCE_EXISTS": "Reference already exists",
    "DISPATCH_NOT_ENABLED": "Dispatch mode is not enabled",
    "DISPATCH_ALREADY_ENABLED": "Dispatch mode is already enabled",
    "DISPATCH_CONFLICT": "Another dispatch session is active in this project",
    "DISPATCH_IN_PROGRESS": "A dispatched unit of work is still running",
    "DISPATCH_NOT_PREPARED": "Node has no prepared dispatch",
    "VCS_OPERATION_FAILED": "Version control operation failed",
    "MERGE_CONFLICT": "Merge produced conflicts",
    "GRAPH_CORRUPTED": "Workspace document is unreadable",
}


class TaskTreeError(Exception):
    """Base error with a stable code, a message and structured details."""

    code = "TASKTREE_ERROR"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or ERROR_MESSAGES.get(self.code, self.code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class WorkspaceNotFound(TaskTreeError):
    code = "WORKSPACE_NOT_FOUND"


class GraphCorrupted(TaskTreeError):
    code = "GRAPH_CORRUPTED"


class NodeNotFound(TaskTreeError):
    code = "NODE_NOT_FOUND"


class ParentNotFound(TaskTreeError):
    code = "PARENT_NOT_FOUND"


class CannotDeleteRoot(TaskTreeError):
    code = "CANNOT_DELETE_ROOT"


class InvalidParams(TaskTreeError):
    code = "INVALID_PARAMS"


class InvalidNodeType(TaskTreeError):
    code = "INVALID_NODE_TYPE"


class InvalidTransition(TaskTreeError):
    code = "INVALID_TRANSITION"


class ConclusionRequired(TaskTreeError):
    code = "CONCLUSION_REQUIRED"


class ExecutionCannotHaveChildren(TaskTreeError):
    code = "EXECUTION_CANNOT_HAVE_CHILDREN"


class InvalidParentStatus(TaskTreeError):
    code = "INVALID_PARENT_STATUS"


class IncompleteChildren(TaskTreeError):
    code = "INCOMPLETE_CHILDREN"


class ReferenceNotFound(TaskTreeError):
    code = "REFERENCE_NOT_FOUND"


class ReferenceExists(TaskTreeError):
    code = "REFERENCE_EXISTS"


class DispatchNotEnabled(TaskTreeError):
    code = "DISPATCH_NOT_ENABLED"


class DispatchAlreadyEnabled(TaskTreeError):
    code = "DISPATCH_ALREADY_ENABLED"


class DispatchConcurrencyConflict(TaskTreeError):
    """Raised when another dispatch session holds the project.

    ``details`` names the holder (``workspace_id`` and, when known,
    ``node_id``) so callers can decide whether to wait or intervene.
    """

    code = "DISPATCH_CONFLICT"


class DispatchInProgress(TaskTreeError):
    code = "DISPATCH_IN_PROGRESS"


class DispatchNotPrepared(TaskTreeError):
    code = "DISPATCH_NOT_PREPARED"


class VcsOperationFailed(TaskTreeError):
    code = "VCS_OPERATION_FAILED"


class MergeConflict(VcsOperationFailed):
    """A merge stopped on conflicts. The merge is aborted, never resolved."""

    code = "MERGE_CONFLICT"
