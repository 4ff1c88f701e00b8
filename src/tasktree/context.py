"""Context aggregation for a single node.

:func:`build_context` is a pure function over one workspace snapshot and a
log reader. It walks from the target up to the root, stopping after the
first isolated node, and assembles the frames an agent needs to work on the
target without seeing unrelated branches of the tree.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_MAX_LOG_ENTRIES, EMPTY_PROBLEM_MARKERS
from .errors import NodeNotFound
from .models import DocRef, LogEntry, Node, PlanningStatus, Workspace

LogReader = Callable[[str], list[LogEntry]]


class ContextOptions(BaseModel):
    include_log: bool = True
    max_log_entries: int = Field(DEFAULT_MAX_LOG_ENTRIES, ge=0)
    reverse_log: bool = False
    include_problem: bool = True


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------

@dataclass
class Frame:
    node_id: str
    type: str
    title: str
    status: str
    requirement: str = ""
    note: str = ""
    docs: list[dict[str, str]] = field(default_factory=list)
    conclusion: Optional[str] = None
    problem: Optional[str] = None
    next_step: Optional[str] = None
    log: Optional[list[dict[str, str]]] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        # omitted sections are absent, not null
        for key in ("problem", "next_step", "log"):
            if data[key] is None:
                data.pop(key)
        return data


@dataclass
class ChildConclusion:
    node_id: str
    title: str
    type: str
    status: str
    conclusion: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass
class ContextView:
    workspace: dict[str, Any]
    chain: list[Frame]
    references: list[Frame]
    child_conclusions: list[ChildConclusion]

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace": self.workspace,
            "chain": [f.to_dict() for f in self.chain],
            "references": [f.to_dict() for f in self.references],
            "child_conclusions": [c.to_dict() for c in self.child_conclusions],
        }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _active(docs: list[DocRef]) -> list[dict[str, str]]:
    return [{"path": d.path, "description": d.description} for d in docs if d.active]


def tail_logs(entries: list[LogEntry], max_entries: int, reverse: bool = False) -> list[LogEntry]:
    """Keep the most recent *max_entries* entries, optionally newest first."""
    if max_entries <= 0:
        return []
    kept = entries[-max_entries:]
    if reverse:
        kept = list(reversed(kept))
    return kept


def _problem_text(node: Node) -> Optional[str]:
    if node.problem is None or node.problem.strip() in EMPTY_PROBLEM_MARKERS:
        return None
    return node.problem


def build_frame(node: Node, log_reader: LogReader, options: ContextOptions) -> Frame:
    frame = Frame(
        node_id=node.id,
        type=node.type.value,
        title=node.title,
        status=node.status.value,
        requirement=node.requirement,
        note=node.note,
        docs=_active(node.docs),
        conclusion=node.conclusion,
    )
    if options.include_log:
        entries = tail_logs(log_reader(node.id), options.max_log_entries, options.reverse_log)
        frame.log = [e.to_dict() for e in entries]
    if options.include_problem:
        problem = _problem_text(node)
        if problem is not None:
            frame.problem = problem
            frame.next_step = node.next_step
    return frame


def _workspace_part(workspace: Workspace) -> dict[str, Any]:
    part: dict[str, Any] = {
        "id": workspace.id,
        "name": workspace.name,
        "goal": workspace.goal,
        "rules": list(workspace.rules),
        "docs": _active(workspace.docs),
    }
    if workspace.dispatch_enabled:
        part["dispatch"] = workspace.dispatch.to_dict()
    return part


def build_context(
    workspace: Workspace,
    log_reader: LogReader,
    node_id: str,
    options: Optional[ContextOptions] = None,
) -> ContextView:
    """Assemble the context view for *node_id* from a workspace snapshot.

    The chain runs from the highest visible ancestor down to the target.
    Ascent stops after the first node (the target included) whose
    ``isolate`` flag is set.
    """
    options = options or ContextOptions()
    nodes = workspace.nodes
    target = nodes.get(node_id)
    if target is None:
        raise NodeNotFound(f"Node '{node_id}' does not exist", node_id=node_id)

    chain: list[Frame] = []
    seen: set[str] = set()
    current: Optional[Node] = target
    while current is not None and current.id not in seen:
        seen.add(current.id)
        chain.append(build_frame(current, log_reader, options))
        if current.isolate or not current.parent_id:
            break
        current = nodes.get(current.parent_id)
    chain.reverse()

    references: list[Frame] = []
    referenced: set[str] = set()
    for ref in target.references:
        if not ref.active or ref.path in referenced:
            continue
        ref_node = nodes.get(ref.path)
        if ref_node is None:
            continue
        referenced.add(ref.path)
        references.append(build_frame(ref_node, log_reader, options))

    child_conclusions: list[ChildConclusion] = []
    if target.is_planning and target.status == PlanningStatus.MONITORING:
        for child_id in target.children:
            child = nodes.get(child_id)
            if child is None or not child.is_terminal or not child.conclusion:
                continue
            child_conclusions.append(
                ChildConclusion(
                    node_id=child.id,
                    title=child.title,
                    type=child.type.value,
                    status=child.status.value,
                    conclusion=child.conclusion,
                )
            )

    return ContextView(
        workspace=_workspace_part(workspace),
        chain=chain,
        references=references,
        child_conclusions=child_conclusions,
    )
