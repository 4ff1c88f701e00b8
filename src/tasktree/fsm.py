"""Node lifecycle state machines.

Planning and execution nodes each get their own transition table. Everything
in this module is pure: functions read node records and return plans; only
:func:`apply_plan` mutates, and the engine calls it inside a store
transaction once the whole plan (primary change plus cascades) is known.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, MutableMapping, Optional

from .errors import (
    ConclusionRequired,
    ExecutionCannotHaveChildren,
    IncompleteChildren,
    InvalidParentStatus,
    InvalidTransition,
    NodeNotFound,
)
from .models import (
    Action,
    ExecutionStatus,
    Node,
    NodeStatus,
    NodeType,
    PlanningStatus,
    TERMINAL_STATUSES,
    now_iso,
)


EXECUTION_TRANSITIONS: dict[ExecutionStatus, dict[Action, ExecutionStatus]] = {
    ExecutionStatus.PENDING: {Action.START: ExecutionStatus.IMPLEMENTING},
    ExecutionStatus.IMPLEMENTING: {
        Action.SUBMIT: ExecutionStatus.VALIDATING,
        Action.COMPLETE: ExecutionStatus.COMPLETED,
        Action.FAIL: ExecutionStatus.FAILED,
    },
    ExecutionStatus.VALIDATING: {
        Action.COMPLETE: ExecutionStatus.COMPLETED,
        Action.FAIL: ExecutionStatus.FAILED,
    },
    ExecutionStatus.COMPLETED: {Action.REOPEN: ExecutionStatus.IMPLEMENTING},
    ExecutionStatus.FAILED: {Action.RETRY: ExecutionStatus.IMPLEMENTING},
}

PLANNING_TRANSITIONS: dict[PlanningStatus, dict[Action, PlanningStatus]] = {
    PlanningStatus.PENDING: {Action.START: PlanningStatus.PLANNING},
    PlanningStatus.PLANNING: {
        Action.COMPLETE: PlanningStatus.COMPLETED,
        Action.CANCEL: PlanningStatus.CANCELLED,
    },
    PlanningStatus.MONITORING: {
        Action.COMPLETE: PlanningStatus.COMPLETED,
        Action.CANCEL: PlanningStatus.CANCELLED,
    },
    PlanningStatus.COMPLETED: {Action.REOPEN: PlanningStatus.PLANNING},
    PlanningStatus.CANCELLED: {Action.REOPEN: PlanningStatus.PLANNING},
}

CONCLUSION_REQUIRED_ACTIONS = frozenset({Action.COMPLETE, Action.FAIL, Action.CANCEL})

# Statuses that carry a conclusion; every other status has conclusion None.
CONCLUDED_STATUSES = TERMINAL_STATUSES


@dataclass(frozen=True)
class StatusChange:
    """One planned status change. Cascades are lists of these, in order."""

    node_id: str
    from_status: str
    to_status: str
    reason: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "node_id": self.node_id,
            "from": self.from_status,
            "to": self.to_status,
            "reason": self.reason,
        }

    def __str__(self) -> str:
        return f"{self.node_id}: {self.from_status} -> {self.to_status}"


@dataclass
class TransitionPlan:
    node_id: str
    action: Action
    previous_status: str
    current_status: str
    conclusion: Optional[str]
    cascade: list[StatusChange] = field(default_factory=list)
    hint: Optional[str] = None
    action_required: Optional[dict[str, Any]] = None

    @property
    def primary(self) -> StatusChange:
        return StatusChange(self.node_id, self.previous_status, self.current_status, self.action.value)


def _table_for(node_type: NodeType) -> Mapping[Any, Mapping[Action, Any]]:
    return EXECUTION_TRANSITIONS if node_type == NodeType.EXECUTION else PLANNING_TRANSITIONS


def next_status(node_type: NodeType, status: NodeStatus, action: Action) -> Optional[NodeStatus]:
    """Look up the target status, or ``None`` when the table has no entry."""
    return _table_for(node_type).get(status, {}).get(action)


def allowed_actions(node: Node) -> list[Action]:
    return list(_table_for(node.type).get(node.status, {}).keys())


def _coerce_action(action: Any) -> Action:
    try:
        return Action(getattr(action, "value", action))
    except ValueError:
        raise InvalidTransition(f"Unknown action '{action}'", action=str(action)) from None


def validate_transition(node: Node, action: Action, conclusion: Optional[str]) -> NodeStatus:
    target = next_status(node.type, node.status, action)
    if target is None:
        raise InvalidTransition(
            f"Invalid transition: {node.type.value} node {node.id} "
            f"{node.status.value} --[{action.value}]--> ?",
            node_id=node.id,
            node_type=node.type.value,
            status=node.status.value,
            action=action.value,
            allowed=[a.value for a in allowed_actions(node)],
        )
    if action in CONCLUSION_REQUIRED_ACTIONS and not (conclusion or "").strip():
        raise ConclusionRequired(
            f"'{action.value}' requires a conclusion",
            node_id=node.id,
            action=action.value,
        )
    return target


def _get(nodes: Mapping[str, Node], node_id: str) -> Node:
    node = nodes.get(node_id)
    if node is None:
        raise NodeNotFound(f"Node '{node_id}' does not exist", node_id=node_id)
    return node


def incomplete_children(nodes: Mapping[str, Node], node: Node) -> list[str]:
    pending: list[str] = []
    for child_id in node.children:
        child = nodes.get(child_id)
        if child is not None and not child.is_terminal:
            pending.append(child_id)
    return pending


def _ancestor_steps(ancestor: Node) -> list[str]:
    """Statuses an ancestor passes through to reach ``monitoring``."""
    status = ancestor.status
    if status == PlanningStatus.PENDING:
        return [PlanningStatus.PLANNING.value, PlanningStatus.MONITORING.value]
    if status in (PlanningStatus.PLANNING, PlanningStatus.COMPLETED):
        return [PlanningStatus.MONITORING.value]
    return []


def plan_ancestor_cascade(nodes: Mapping[str, Node], node_id: str) -> list[StatusChange]:
    """Bring every planning ancestor of *node_id* back to ``monitoring``.

    Used when an execution node enters ``implementing``: work under an
    ancestor means that ancestor is supervising children again.
    """
    changes: list[StatusChange] = []
    seen = {node_id}
    current = _get(nodes, node_id).parent_id
    while current and current not in seen:
        seen.add(current)
        ancestor = nodes.get(current)
        if ancestor is None:
            break
        if ancestor.is_planning:
            previous = ancestor.status.value
            for step in _ancestor_steps(ancestor):
                changes.append(StatusChange(ancestor.id, previous, step, "cascade"))
                previous = step
        current = ancestor.parent_id
    return changes


def plan_child_creation(parent: Node) -> list[StatusChange]:
    """Validate that *parent* accepts a new child and plan its status change."""
    if parent.is_execution:
        raise ExecutionCannotHaveChildren(
            f"Execution node '{parent.id}' cannot have children; fail it and decompose from its planning parent",
            parent_id=parent.id,
        )
    status = parent.status
    if status == PlanningStatus.CANCELLED:
        raise InvalidParentStatus(
            f"Parent status '{status.value}' does not allow new children",
            parent_id=parent.id,
            status=status.value,
        )
    if status == PlanningStatus.PLANNING:
        return [StatusChange(parent.id, status.value, PlanningStatus.MONITORING.value, "first_child")]
    if status == PlanningStatus.COMPLETED:
        return [
            StatusChange(parent.id, status.value, PlanningStatus.PLANNING.value, "implicit_reopen"),
            StatusChange(parent.id, PlanningStatus.PLANNING.value, PlanningStatus.MONITORING.value, "first_child"),
        ]
    # pending parents stay pending; monitoring parents are already supervising
    return []


def plan_transition(
    nodes: Mapping[str, Node],
    node_id: str,
    action: Any,
    conclusion: Optional[str] = None,
) -> TransitionPlan:
    """Compute the full effect of *action* on *node_id* without mutating."""
    node = _get(nodes, node_id)
    act = _coerce_action(action)
    target = validate_transition(node, act, conclusion)

    if node.is_planning and act == Action.COMPLETE:
        pending = incomplete_children(nodes, node)
        if pending:
            raise IncompleteChildren(
                f"Node '{node.id}' has {len(pending)} unfinished children: {', '.join(pending)}",
                node_id=node.id,
                children=pending,
            )

    plan = TransitionPlan(
        node_id=node.id,
        action=act,
        previous_status=node.status.value,
        current_status=target.value,
        conclusion=conclusion if target.value in CONCLUDED_STATUSES[node.type] else None,
    )

    if node.is_execution and target == ExecutionStatus.IMPLEMENTING:
        plan.cascade = plan_ancestor_cascade(nodes, node.id)

    if node.is_planning and act == Action.REOPEN and node.children:
        plan.hint = "Node reopened with existing children; review them before adding new ones."
        plan.action_required = {
            "type": "review_structure",
            "message": plan.hint,
            "data": {
                "node_id": node.id,
                "children": [
                    {"id": cid, "status": nodes[cid].status.value}
                    for cid in node.children
                    if cid in nodes
                ],
            },
        }
    return plan


def _set_status(node: Node, status: str, conclusion: Optional[str], ts: str) -> None:
    node.status = type(node.status)(status)
    node.conclusion = conclusion if status in CONCLUDED_STATUSES[node.type] else None
    node.touch(ts)


def apply_changes(nodes: MutableMapping[str, Node], changes: list[StatusChange], ts: Optional[str] = None) -> None:
    """Apply cascade entries in order; the last entry per node wins."""
    stamp = ts or now_iso()
    for change in changes:
        _set_status(nodes[change.node_id], change.to_status, None, stamp)


def apply_plan(nodes: MutableMapping[str, Node], plan: TransitionPlan, ts: Optional[str] = None) -> Node:
    stamp = ts or now_iso()
    node = nodes[plan.node_id]
    _set_status(node, plan.current_status, plan.conclusion, stamp)
    apply_changes(nodes, plan.cascade, stamp)
    return node
