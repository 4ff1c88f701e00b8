"""Node, workspace and dispatch records for the task tree.

Everything here is a plain dataclass that round-trips through ``to_dict`` /
``from_dict`` so the store can persist it as YAML. Enum values are the wire
strings.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from .constants import NODE_ID_PREFIX, ROOT_NODE_ID, WORKSPACE_ID_PREFIX


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class NodeType(str, Enum):
    """Planning nodes decompose work; execution nodes perform it."""

    PLANNING = "planning"
    EXECUTION = "execution"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    IMPLEMENTING = "implementing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanningStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


NodeStatus = Union[ExecutionStatus, PlanningStatus]


class Action(str, Enum):
    """The fixed action vocabulary shared by both node types."""

    START = "start"
    SUBMIT = "submit"
    COMPLETE = "complete"
    FAIL = "fail"
    RETRY = "retry"
    REOPEN = "reopen"
    CANCEL = "cancel"


class DispatchStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DispatchStatus.PASSED, DispatchStatus.FAILED)


class RefStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


TERMINAL_STATUSES: dict[NodeType, frozenset[str]] = {
    NodeType.EXECUTION: frozenset({ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value}),
    NodeType.PLANNING: frozenset({PlanningStatus.COMPLETED.value, PlanningStatus.CANCELLED.value}),
}


def status_enum(node_type: NodeType) -> type[Enum]:
    return ExecutionStatus if node_type == NodeType.EXECUTION else PlanningStatus


def parse_status(node_type: NodeType, raw: Any) -> NodeStatus:
    """Coerce *raw* into the status enum of *node_type*.

    Raises ``ValueError`` for a status that belongs to the other type.
    """
    enum_cls = status_enum(node_type)
    return enum_cls(getattr(raw, "value", raw))  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_node_id() -> str:
    return f"{NODE_ID_PREFIX}{uuid.uuid4().hex[:8]}"


def generate_workspace_id() -> str:
    return f"{WORKSPACE_ID_PREFIX}{uuid.uuid4().hex[:10]}"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class DocRef:
    """A document or node reference with an active/expired flag.

    Expired references stay on the node but are hidden from context.
    """

    path: str
    description: str = ""
    status: RefStatus = RefStatus.ACTIVE

    @property
    def active(self) -> bool:
        return self.status == RefStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "description": self.description, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DocRef":
        return cls(
            path=str(data.get("path") or ""),
            description=str(data.get("description") or ""),
            status=RefStatus(data.get("status") or RefStatus.ACTIVE.value),
        )


@dataclass
class LogEntry:
    timestamp: str
    operator: str
    event: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogEntry":
        return cls(
            timestamp=str(data.get("timestamp") or ""),
            operator=str(data.get("operator") or ""),
            event=str(data.get("event") or ""),
        )


@dataclass
class NodeDispatch:
    """Dispatch sub-record carried by an execution node in dispatch mode."""

    use_vcs: bool = False
    start_marker: str = ""
    end_marker: Optional[str] = None
    status: DispatchStatus = DispatchStatus.PENDING
    # Conclusion held back while a verification node runs.
    conclusion: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeDispatch":
        return cls(
            use_vcs=bool(data.get("use_vcs", False)),
            start_marker=str(data.get("start_marker") or ""),
            end_marker=data.get("end_marker"),
            status=DispatchStatus(data.get("status") or DispatchStatus.PENDING.value),
            conclusion=data.get("conclusion"),
        )


@dataclass
class Node:
    id: str = field(default_factory=generate_node_id)
    type: NodeType = NodeType.EXECUTION
    parent_id: Optional[str] = None
    children: list[str] = field(default_factory=list)
    status: NodeStatus = ExecutionStatus.PENDING
    isolate: bool = False
    references: list[DocRef] = field(default_factory=list)
    conclusion: Optional[str] = None
    dispatch: Optional[NodeDispatch] = None

    title: str = ""
    requirement: str = ""
    note: str = ""
    docs: list[DocRef] = field(default_factory=list)
    problem: Optional[str] = None
    next_step: Optional[str] = None
    verifies: Optional[str] = None

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def is_planning(self) -> bool:
        return self.type == NodeType.PLANNING

    @property
    def is_execution(self) -> bool:
        return self.type == NodeType.EXECUTION

    @property
    def is_terminal(self) -> bool:
        return self.status.value in TERMINAL_STATUSES[self.type]

    def touch(self, ts: Optional[str] = None) -> None:
        self.updated_at = ts or now_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "status": self.status.value,
            "isolate": self.isolate,
            "references": [ref.to_dict() for ref in self.references],
            "conclusion": self.conclusion,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "title": self.title,
            "requirement": self.requirement,
            "note": self.note,
            "docs": [doc.to_dict() for doc in self.docs],
            "problem": self.problem,
            "next_step": self.next_step,
            "verifies": self.verifies,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Node":
        node_type = NodeType(data.get("type") or NodeType.EXECUTION.value)
        raw_dispatch = data.get("dispatch")
        return cls(
            id=str(data.get("id") or generate_node_id()),
            type=node_type,
            parent_id=data.get("parent_id"),
            children=[str(c) for c in list(data.get("children") or [])],
            status=parse_status(node_type, data.get("status") or "pending"),
            isolate=bool(data.get("isolate", False)),
            references=[DocRef.from_dict(r) for r in list(data.get("references") or []) if isinstance(r, dict)],
            conclusion=data.get("conclusion"),
            dispatch=NodeDispatch.from_dict(raw_dispatch) if isinstance(raw_dispatch, dict) else None,
            title=str(data.get("title") or ""),
            requirement=str(data.get("requirement") or ""),
            note=str(data.get("note") or ""),
            docs=[DocRef.from_dict(d) for d in list(data.get("docs") or []) if isinstance(d, dict)],
            problem=data.get("problem"),
            next_step=data.get("next_step"),
            verifies=data.get("verifies"),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass
class DispatchLimits:
    timeout_ms: int = 300_000
    max_retries: int = 3

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DispatchConfig:
    """Workspace-level dispatch session state."""

    enabled: bool = True
    use_vcs: bool = False
    enabled_at: int = 0
    original_branch: Optional[str] = None
    process_branch: Optional[str] = None
    backup_branches: list[str] = field(default_factory=list)
    limits: DispatchLimits = field(default_factory=DispatchLimits)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchConfig":
        limits = dict(data.get("limits") or {})
        return cls(
            enabled=bool(data.get("enabled", True)),
            use_vcs=bool(data.get("use_vcs", False)),
            enabled_at=int(data.get("enabled_at") or 0),
            original_branch=data.get("original_branch"),
            process_branch=data.get("process_branch"),
            backup_branches=[str(b) for b in list(data.get("backup_branches") or [])],
            limits=DispatchLimits(
                timeout_ms=int(limits.get("timeout_ms") or 300_000),
                max_retries=int(limits.get("max_retries") or 3),
            ),
        )


@dataclass
class Workspace:
    """One node tree plus its configuration, persisted as a single document."""

    id: str = field(default_factory=generate_workspace_id)
    name: str = ""
    goal: str = ""
    rules: list[str] = field(default_factory=list)
    docs: list[DocRef] = field(default_factory=list)
    project_root: str = ""
    root_node_id: str = ROOT_NODE_ID
    current_focus: Optional[str] = None
    dispatch: Optional[DispatchConfig] = None
    nodes: dict[str, Node] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def dispatch_enabled(self) -> bool:
        return bool(self.dispatch and self.dispatch.enabled)

    def active_dispatch_nodes(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.dispatch and not n.dispatch.status.is_terminal]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "rules": list(self.rules),
            "docs": [d.to_dict() for d in self.docs],
            "project_root": self.project_root,
            "root_node_id": self.root_node_id,
            "current_focus": self.current_focus,
            "dispatch": self.dispatch.to_dict() if self.dispatch else None,
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Workspace":
        nodes = [Node.from_dict(n) for n in list(data.get("nodes") or []) if isinstance(n, dict)]
        raw_dispatch = data.get("dispatch")
        return cls(
            id=str(data.get("id") or generate_workspace_id()),
            name=str(data.get("name") or ""),
            goal=str(data.get("goal") or ""),
            rules=[str(r) for r in list(data.get("rules") or [])],
            docs=[DocRef.from_dict(d) for d in list(data.get("docs") or []) if isinstance(d, dict)],
            project_root=str(data.get("project_root") or ""),
            root_node_id=str(data.get("root_node_id") or ROOT_NODE_ID),
            current_focus=data.get("current_focus"),
            dispatch=DispatchConfig.from_dict(raw_dispatch) if isinstance(raw_dispatch, dict) else None,
            nodes={n.id: n for n in nodes},
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )
