"""Tests for context aggregation (context.py)."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from tasktree.context import ContextOptions, build_context, tail_logs
from tasktree.errors import NodeNotFound
from tasktree.models import (
    DispatchConfig,
    DocRef,
    ExecutionStatus as E,
    LogEntry,
    Node,
    NodeType,
    PlanningStatus as P,
    RefStatus,
    Workspace,
)


def _node(node_id: str, parent: str | None, node_type: NodeType = NodeType.PLANNING, **kwargs) -> Node:
    status = kwargs.pop("status", P.PENDING if node_type == NodeType.PLANNING else E.PENDING)
    return Node(id=node_id, type=node_type, parent_id=parent, status=status, title=node_id.upper(), **kwargs)


def _workspace(*nodes: Node) -> Workspace:
    by_id = {n.id: n for n in nodes}
    for node in nodes:
        if node.parent_id and node.parent_id in by_id:
            by_id[node.parent_id].children.append(node.id)
    return Workspace(id="ws-test", name="demo", goal="goal", rules=["r1"], nodes=by_id)


def _logs(mapping: dict[str, list[str]]):
    def reader(node_id: str) -> list[LogEntry]:
        return [LogEntry(timestamp=f"t{i}", operator="AI", event=e) for i, e in enumerate(mapping.get(node_id, []))]

    return reader


def _no_logs(node_id: str) -> list[LogEntry]:
    return []


@pytest.fixture
def chain_ws() -> Workspace:
    return _workspace(
        _node("root", None),
        _node("a", "root", isolate=True),
        _node("b", "a"),
        _node("t", "b", NodeType.EXECUTION),
    )


class TestChain:
    def test_chain_stops_after_first_isolated_ancestor(self, chain_ws: Workspace) -> None:
        view = build_context(chain_ws, _no_logs, "t")
        assert [f.node_id for f in view.chain] == ["a", "b", "t"]

    def test_chain_reaches_root_without_isolation(self, chain_ws: Workspace) -> None:
        chain_ws.nodes["a"].isolate = False
        view = build_context(chain_ws, _no_logs, "t")
        assert [f.node_id for f in view.chain] == ["root", "a", "b", "t"]

    def test_isolated_target_is_alone(self, chain_ws: Workspace) -> None:
        chain_ws.nodes["t"].isolate = True
        view = build_context(chain_ws, _no_logs, "t")
        assert [f.node_id for f in view.chain] == ["t"]

    def test_is_idempotent(self, chain_ws: Workspace) -> None:
        reader = _logs({"t": ["one", "two"]})
        first = build_context(chain_ws, reader, "t").to_dict()
        second = build_context(chain_ws, reader, "t").to_dict()
        assert first == second

    def test_unknown_node(self, chain_ws: Workspace) -> None:
        with pytest.raises(NodeNotFound):
            build_context(chain_ws, _no_logs, "missing")

    def test_workspace_part(self, chain_ws: Workspace) -> None:
        chain_ws.docs = [DocRef(path="README.md"), DocRef(path="old.md", status=RefStatus.EXPIRED)]
        view = build_context(chain_ws, _no_logs, "t")
        assert view.workspace["id"] == "ws-test"
        assert view.workspace["rules"] == ["r1"]
        assert [d["path"] for d in view.workspace["docs"]] == ["README.md"]
        assert "dispatch" not in view.workspace

        chain_ws.dispatch = DispatchConfig(enabled=True, enabled_at=1)
        assert build_context(chain_ws, _no_logs, "t").workspace["dispatch"]["enabled"] is True

    def test_expired_docs_are_hidden(self, chain_ws: Workspace) -> None:
        chain_ws.nodes["t"].docs = [
            DocRef(path="api.md", description="current"),
            DocRef(path="stale.md", status=RefStatus.EXPIRED),
        ]
        frame = build_context(chain_ws, _no_logs, "t").chain[-1]
        assert frame.docs == [{"path": "api.md", "description": "current"}]


class TestLogsAndProblems:
    def test_log_is_tail_truncated(self, chain_ws: Workspace) -> None:
        reader = _logs({"t": ["e1", "e2", "e3", "e4", "e5"]})
        view = build_context(chain_ws, reader, "t", ContextOptions(max_log_entries=2))
        assert [e["event"] for e in view.chain[-1].log] == ["e4", "e5"]

    def test_reverse_log(self, chain_ws: Workspace) -> None:
        reader = _logs({"t": ["e1", "e2", "e3"]})
        view = build_context(chain_ws, reader, "t", ContextOptions(max_log_entries=2, reverse_log=True))
        assert [e["event"] for e in view.chain[-1].log] == ["e3", "e2"]

    def test_zero_entries_and_disabled_log(self, chain_ws: Workspace) -> None:
        reader = _logs({"t": ["e1"]})
        view = build_context(chain_ws, reader, "t", ContextOptions(max_log_entries=0))
        assert view.chain[-1].log == []

        view = build_context(chain_ws, reader, "t", ContextOptions(include_log=False))
        assert view.chain[-1].log is None
        assert "log" not in view.chain[-1].to_dict()

    def test_negative_max_entries_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ContextOptions(max_log_entries=-1)

    def test_tail_logs(self) -> None:
        entries = [LogEntry(timestamp=str(i), operator="AI", event=str(i)) for i in range(5)]
        assert [e.event for e in tail_logs(entries, 3)] == ["2", "3", "4"]
        assert [e.event for e in tail_logs(entries, 10, reverse=True)] == ["4", "3", "2", "1", "0"]
        assert tail_logs(entries, 0) == []

    def test_problem_included_with_next_step(self, chain_ws: Workspace) -> None:
        chain_ws.nodes["t"].problem = "flaky test"
        chain_ws.nodes["t"].next_step = "pin the seed"
        frame = build_context(chain_ws, _no_logs, "t").chain[-1].to_dict()
        assert frame["problem"] == "flaky test"
        assert frame["next_step"] == "pin the seed"

    @pytest.mark.parametrize("placeholder", ["", "(none)", "  "])
    def test_empty_problem_is_omitted(self, chain_ws: Workspace, placeholder: str) -> None:
        chain_ws.nodes["t"].problem = placeholder
        frame = build_context(chain_ws, _no_logs, "t").chain[-1].to_dict()
        assert "problem" not in frame
        assert "next_step" not in frame

    def test_problem_can_be_excluded(self, chain_ws: Workspace) -> None:
        chain_ws.nodes["t"].problem = "flaky test"
        view = build_context(chain_ws, _no_logs, "t", ContextOptions(include_problem=False))
        assert view.chain[-1].problem is None


class TestReferencesAndConclusions:
    def test_references_are_active_existing_and_unique(self) -> None:
        ws = _workspace(
            _node("root", None),
            _node("t", "root", NodeType.EXECUTION),
            _node("x", "root", NodeType.EXECUTION),
            _node("y", "root", NodeType.EXECUTION),
        )
        ws.nodes["t"].references = [
            DocRef(path="x"),
            DocRef(path="x"),
            DocRef(path="y", status=RefStatus.EXPIRED),
            DocRef(path="gone"),
        ]
        view = build_context(ws, _no_logs, "t")
        assert [f.node_id for f in view.references] == ["x"]

    def test_child_conclusions_for_monitoring_planning_node(self) -> None:
        ws = _workspace(
            _node("p", None, status=P.MONITORING),
            _node("c1", "p", NodeType.EXECUTION, status=E.COMPLETED, conclusion="built"),
            _node("c2", "p", NodeType.EXECUTION, status=E.IMPLEMENTING),
            _node("c3", "p", NodeType.EXECUTION, status=E.FAILED, conclusion="broke"),
        )
        view = build_context(ws, _no_logs, "p")
        assert [(c.node_id, c.status, c.conclusion) for c in view.child_conclusions] == [
            ("c1", "completed", "built"),
            ("c3", "failed", "broke"),
        ]

    def test_no_child_conclusions_outside_monitoring(self) -> None:
        ws = _workspace(
            _node("p", None, status=P.COMPLETED, conclusion="all done"),
            _node("c1", "p", NodeType.EXECUTION, status=E.COMPLETED, conclusion="built"),
        )
        assert build_context(ws, _no_logs, "p").child_conclusions == []
        assert build_context(ws, _no_logs, "c1").child_conclusions == []
