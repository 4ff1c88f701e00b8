"""Node engine: the write path for the task tree.

Every mutation runs inside one ``store.transaction``: the state machine plans
the full change (primary update plus cascades) against the loaded snapshot,
and the engine applies the plan to the same snapshot before it is written
back. Activity-log lines are appended only after the transaction commits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from .constants import OPERATOR_AI, OPERATOR_SYSTEM, ROOT_NODE_ID
from .errors import (
    CannotDeleteRoot,
    DispatchInProgress,
    InvalidNodeType,
    InvalidParams,
    NodeNotFound,
    ParentNotFound,
    ReferenceExists,
    ReferenceNotFound,
)
from .fsm import StatusChange, apply_changes, apply_plan, plan_child_creation, plan_transition
from .models import (
    DispatchStatus,
    DocRef,
    ExecutionStatus,
    LogEntry,
    Node,
    NodeType,
    PlanningStatus,
    RefStatus,
    Workspace,
    generate_node_id,
    now_iso,
)
from .storage.interfaces import WorkspaceStore

REFERENCE_ACTIONS = ("add", "remove", "expire", "activate")
REFERENCE_KINDS = ("node", "doc")


@dataclass
class TransitionResult:
    node_id: str
    action: str
    previous_status: str
    current_status: str
    conclusion: Optional[str] = None
    cascade_updates: list[StatusChange] = field(default_factory=list)
    hint: Optional[str] = None
    action_required: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "node_id": self.node_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "current_status": self.current_status,
            "conclusion": self.conclusion,
            "cascade_updates": [c.to_dict() for c in self.cascade_updates],
        }
        if self.hint:
            data["hint"] = self.hint
        if self.action_required:
            data["action_required"] = self.action_required
        return data


def get_node(workspace: Workspace, node_id: str) -> Node:
    node = workspace.nodes.get(node_id)
    if node is None:
        raise NodeNotFound(f"Node '{node_id}' does not exist", node_id=node_id, workspace_id=workspace.id)
    return node


def transition_in_place(
    workspace: Workspace,
    node_id: str,
    action: Any,
    conclusion: Optional[str] = None,
) -> TransitionResult:
    """Plan and apply *action* on a loaded workspace.

    Callers hold the workspace transaction; nothing is applied if planning
    raises.
    """
    plan = plan_transition(workspace.nodes, node_id, action, conclusion)
    node = apply_plan(workspace.nodes, plan)
    if node.status in (ExecutionStatus.COMPLETED, PlanningStatus.COMPLETED):
        node.problem = None
        node.next_step = None
    return TransitionResult(
        node_id=plan.node_id,
        action=plan.action.value,
        previous_status=plan.previous_status,
        current_status=plan.current_status,
        conclusion=plan.conclusion,
        cascade_updates=list(plan.cascade),
        hint=plan.hint,
        action_required=plan.action_required,
    )


def transition_log_event(result: TransitionResult, reason: Optional[str] = None) -> str:
    event = f"{result.action}: {result.previous_status} -> {result.current_status}"
    if result.conclusion:
        event += f" | {result.conclusion}"
    if reason:
        event += f" ({reason})"
    return event


def _subtree_ids(nodes: dict[str, Node], node_id: str) -> list[str]:
    ordered: list[str] = []
    stack = [node_id]
    while stack:
        current = stack.pop()
        if current in ordered or current not in nodes:
            continue
        ordered.append(current)
        stack.extend(reversed(nodes[current].children))
    return ordered


class NodeEngine:
    """Create, transition and edit nodes of the workspaces in one store.

    Parameters
    ----------
    store:
        Workspace store for the project.
    """

    def __init__(self, store: WorkspaceStore) -> None:
        self.store = store

    def _log(self, workspace_id: str, node_id: Optional[str], operator: str, event: str) -> None:
        self.store.append_log(workspace_id, node_id, LogEntry(timestamp=now_iso(), operator=operator, event=event))

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def create_workspace(
        self,
        name: str,
        goal: str = "",
        rules: Optional[list[str]] = None,
        docs: Optional[list[dict[str, str]]] = None,
    ) -> Workspace:
        if not name or not name.strip():
            raise InvalidParams("Workspace name is required")
        root = Node(
            id=ROOT_NODE_ID,
            type=NodeType.PLANNING,
            status=PlanningStatus.PENDING,
            title=name.strip(),
            requirement=goal,
        )
        workspace = Workspace(
            name=name.strip(),
            goal=goal,
            rules=list(rules or []),
            docs=[DocRef.from_dict(d) for d in docs or []],
            root_node_id=root.id,
            current_focus=root.id,
            nodes={root.id: root},
        )
        self.store.create(workspace)
        self._log(workspace.id, None, OPERATOR_SYSTEM, f"workspace created: {workspace.name}")
        return workspace

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def create_node(
        self,
        workspace_id: str,
        parent_id: str,
        node_type: str,
        title: str,
        requirement: str = "",
        note: str = "",
        docs: Optional[list[dict[str, str]]] = None,
        verifies: Optional[str] = None,
        isolate: bool = False,
        operator: str = OPERATOR_AI,
    ) -> dict[str, Any]:
        """Create a node in ``pending`` under *parent_id*.

        Returns ``{"node": ..., "cascade_updates": [...]}``; the cascade holds
        any parent status change caused by the new child.
        """
        try:
            kind = NodeType(node_type)
        except ValueError:
            raise InvalidNodeType(f"Unknown node type '{node_type}'", node_type=str(node_type)) from None
        if not title or not title.strip():
            raise InvalidParams("Node title is required")

        with self.store.transaction(workspace_id) as ws:
            parent = ws.nodes.get(parent_id)
            if parent is None:
                raise ParentNotFound(f"Parent node '{parent_id}' does not exist", parent_id=parent_id)
            cascade = plan_child_creation(parent)
            if verifies is not None:
                self._check_verifies(ws, parent, kind, verifies)

            new_id = generate_node_id()
            while new_id in ws.nodes:
                new_id = generate_node_id()
            node = Node(
                id=new_id,
                type=kind,
                parent_id=parent.id,
                status=ExecutionStatus.PENDING if kind == NodeType.EXECUTION else PlanningStatus.PENDING,
                isolate=isolate,
                title=title.strip(),
                requirement=requirement,
                note=note,
                docs=[DocRef.from_dict(d) for d in docs or []],
                verifies=verifies,
            )
            ws.nodes[node.id] = node
            parent.children.append(node.id)
            apply_changes(ws.nodes, cascade)
            parent.touch()

        logger.info("Created {} node {} under {} in {}", kind.value, node.id, parent_id, workspace_id)
        self._log(workspace_id, node.id, operator, f"created: {node.title}")
        for change in cascade:
            self._log(workspace_id, change.node_id, OPERATOR_SYSTEM, f"{change.reason}: {change.from_status} -> {change.to_status}")
        return {"node": node, "cascade_updates": cascade}

    @staticmethod
    def _check_verifies(ws: Workspace, parent: Node, kind: NodeType, verifies: str) -> None:
        if kind != NodeType.EXECUTION:
            raise InvalidParams("Only execution nodes can verify another node", verifies=verifies)
        target = ws.nodes.get(verifies)
        if target is None:
            raise NodeNotFound(f"Verified node '{verifies}' does not exist", node_id=verifies)
        if not target.is_execution or target.parent_id != parent.id:
            raise InvalidParams(
                f"Node '{verifies}' must be an execution sibling to be verified",
                verifies=verifies,
            )

    def get_node(self, workspace_id: str, node_id: str) -> Node:
        return get_node(self.store.read(workspace_id), node_id)

    def transition(
        self,
        workspace_id: str,
        node_id: str,
        action: Any,
        conclusion: Optional[str] = None,
        reason: Optional[str] = None,
        operator: str = OPERATOR_AI,
    ) -> TransitionResult:
        with self.store.transaction(workspace_id) as ws:
            node = get_node(ws, node_id)
            if node.dispatch is not None and node.dispatch.status in (DispatchStatus.EXECUTING, DispatchStatus.TESTING):
                raise DispatchInProgress(
                    f"Node '{node_id}' is dispatched; finish it through dispatch complete or verify",
                    node_id=node_id,
                    dispatch_status=node.dispatch.status.value,
                )
            result = transition_in_place(ws, node_id, action, conclusion)

        logger.info(
            "Transition {}/{}: {} -> {} via {} ({} cascaded)",
            workspace_id,
            node_id,
            result.previous_status,
            result.current_status,
            result.action,
            len(result.cascade_updates),
        )
        self._log(workspace_id, node_id, operator, transition_log_event(result, reason))
        for change in result.cascade_updates:
            self._log(workspace_id, change.node_id, OPERATOR_SYSTEM, f"{change.reason}: {change.from_status} -> {change.to_status}")
        return result

    def delete_node(self, workspace_id: str, node_id: str) -> list[str]:
        """Delete *node_id* and its subtree; returns the removed IDs."""
        with self.store.transaction(workspace_id) as ws:
            node = get_node(ws, node_id)
            if node_id == ws.root_node_id or node.parent_id is None:
                raise CannotDeleteRoot(node_id=node_id)
            removed = _subtree_ids(ws.nodes, node_id)
            gone = set(removed)
            parent = ws.nodes.get(node.parent_id)
            if parent is not None:
                parent.children = [c for c in parent.children if c != node_id]
                parent.touch()
            for dead in removed:
                ws.nodes.pop(dead, None)
            for other in ws.nodes.values():
                kept = [r for r in other.references if r.path not in gone]
                if len(kept) != len(other.references):
                    other.references = kept
                    other.touch()
                if other.verifies in gone:
                    other.verifies = None
            if ws.current_focus in gone:
                ws.current_focus = node.parent_id

        self.store.delete_logs(workspace_id, removed)
        logger.info("Deleted {} node(s) from {}: {}", len(removed), workspace_id, ", ".join(removed))
        self._log(workspace_id, None, OPERATOR_SYSTEM, f"deleted subtree {node_id} ({len(removed)} nodes)")
        return removed

    def update_node(
        self,
        workspace_id: str,
        node_id: str,
        title: Optional[str] = None,
        requirement: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Node:
        if title is not None and not title.strip():
            raise InvalidParams("Node title cannot be empty", node_id=node_id)
        with self.store.transaction(workspace_id) as ws:
            node = get_node(ws, node_id)
            if title is not None:
                node.title = title.strip()
            if requirement is not None:
                node.requirement = requirement
            if note is not None:
                node.note = note
            node.touch()
        return node

    def set_isolate(self, workspace_id: str, node_id: str, isolate: bool) -> Node:
        with self.store.transaction(workspace_id) as ws:
            node = get_node(ws, node_id)
            node.isolate = bool(isolate)
            node.touch()
        self._log(workspace_id, node_id, OPERATOR_SYSTEM, f"isolate set to {node.isolate}")
        return node

    def reference(
        self,
        workspace_id: str,
        node_id: str,
        target: str,
        action: str,
        description: str = "",
        kind: str = "node",
    ) -> list[DocRef]:
        """Add, remove, expire or re-activate a reference on *node_id*.

        ``kind="node"`` manages cross-node references (target is a node ID);
        ``kind="doc"`` manages document references (target is a path).
        Returns the node's updated list for that kind.
        """
        if action not in REFERENCE_ACTIONS:
            raise InvalidParams(f"Unknown reference action '{action}'", action=action)
        if kind not in REFERENCE_KINDS:
            raise InvalidParams(f"Unknown reference kind '{kind}'", kind=kind)
        if not target:
            raise InvalidParams("Reference target is required")

        with self.store.transaction(workspace_id) as ws:
            node = get_node(ws, node_id)
            refs = node.references if kind == "node" else node.docs
            existing = next((r for r in refs if r.path == target), None)

            if action == "add":
                if existing is not None:
                    raise ReferenceExists(f"'{target}' is already referenced by {node_id}", target=target)
                if kind == "node":
                    if target == node_id:
                        raise InvalidParams("A node cannot reference itself", node_id=node_id)
                    get_node(ws, target)
                refs.append(DocRef(path=target, description=description))
            else:
                if existing is None:
                    raise ReferenceNotFound(f"'{target}' is not referenced by {node_id}", target=target)
                if action == "remove":
                    refs.remove(existing)
                elif action == "expire":
                    existing.status = RefStatus.EXPIRED
                else:
                    existing.status = RefStatus.ACTIVE
            node.touch()
            updated = list(refs)

        self._log(workspace_id, node_id, OPERATOR_SYSTEM, f"{kind} reference {action}: {target}")
        return updated

    # ------------------------------------------------------------------
    # Logs, problems, focus
    # ------------------------------------------------------------------

    def append_log(
        self,
        workspace_id: str,
        node_id: Optional[str],
        event: str,
        operator: str = OPERATOR_AI,
    ) -> LogEntry:
        if not event or not event.strip():
            raise InvalidParams("Log event is required")
        ws = self.store.read(workspace_id)
        if node_id is not None:
            get_node(ws, node_id)
        entry = LogEntry(timestamp=now_iso(), operator=operator, event=event.strip())
        self.store.append_log(workspace_id, node_id, entry)
        return entry

    def read_log(self, workspace_id: str, node_id: Optional[str] = None) -> list[LogEntry]:
        return self.store.read_log(workspace_id, node_id)

    def update_problem(
        self,
        workspace_id: str,
        node_id: str,
        problem: str,
        next_step: Optional[str] = None,
    ) -> Node:
        if not problem or not problem.strip():
            raise InvalidParams("Problem text is required; use clear_problem to remove it")
        with self.store.transaction(workspace_id) as ws:
            node = get_node(ws, node_id)
            node.problem = problem.strip()
            node.next_step = next_step
            node.touch()
        self._log(workspace_id, node_id, OPERATOR_AI, f"problem: {node.problem}")
        return node

    def clear_problem(self, workspace_id: str, node_id: str) -> Node:
        with self.store.transaction(workspace_id) as ws:
            node = get_node(ws, node_id)
            node.problem = None
            node.next_step = None
            node.touch()
        return node

    def focus(self, workspace_id: str, node_id: str) -> dict[str, Optional[str]]:
        with self.store.transaction(workspace_id) as ws:
            get_node(ws, node_id)
            previous = ws.current_focus
            ws.current_focus = node_id
        return {"previous_focus": previous, "current_focus": node_id}

    def list_tree(self, workspace_id: str) -> dict[str, Any]:
        """Return the workspace tree as nested dictionaries rooted at the root node."""
        ws = self.store.read(workspace_id)
        seen: set[str] = set()

        def _render(node_id: str) -> Optional[dict[str, Any]]:
            node = ws.nodes.get(node_id)
            if node is None or node_id in seen:
                return None
            seen.add(node_id)
            entry: dict[str, Any] = {
                "id": node.id,
                "type": node.type.value,
                "title": node.title,
                "status": node.status.value,
                "isolate": node.isolate,
                "children": [],
            }
            if node.dispatch is not None:
                entry["dispatch"] = node.dispatch.status.value
            if node.id == ws.current_focus:
                entry["focus"] = True
            for child_id in node.children:
                rendered = _render(child_id)
                if rendered is not None:
                    entry["children"].append(rendered)
            return entry

        return _render(ws.root_node_id) or {}
