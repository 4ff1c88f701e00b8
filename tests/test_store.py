"""Tests for the file workspace store (storage/file_store.py)."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from tasktree.errors import GraphCorrupted, InvalidParams, WorkspaceNotFound
from tasktree.models import ExecutionStatus, LogEntry, Node, NodeType, PlanningStatus, Workspace
from tasktree.storage import FileWorkspaceStore


@pytest.fixture
def store(tmp_path: Path) -> FileWorkspaceStore:
    return FileWorkspaceStore(tmp_path)


def _workspace(name: str = "demo") -> Workspace:
    root = Node(id="root", type=NodeType.PLANNING, status=PlanningStatus.PENDING, title=name)
    return Workspace(name=name, goal="ship it", current_focus="root", nodes={"root": root})


class TestFileWorkspaceStore:
    def test_create_and_read(self, store: FileWorkspaceStore, tmp_path: Path) -> None:
        ws = store.create(_workspace())

        doc = tmp_path / ".tasktree" / ws.id / "workspace.yaml"
        assert doc.exists()
        raw = yaml.safe_load(doc.read_text(encoding="utf-8"))
        assert raw["schema_version"] == 1
        assert raw["name"] == "demo"

        loaded = store.read(ws.id)
        assert loaded.name == "demo"
        assert loaded.goal == "ship it"
        assert loaded.project_root == str(tmp_path.resolve())
        assert loaded.nodes["root"].status == PlanningStatus.PENDING

    def test_create_twice_is_rejected(self, store: FileWorkspaceStore) -> None:
        ws = store.create(_workspace())
        with pytest.raises(InvalidParams):
            store.create(ws)

    def test_transaction_saves_on_success(self, store: FileWorkspaceStore) -> None:
        ws = store.create(_workspace())
        with store.transaction(ws.id) as tx:
            tx.nodes["e1"] = Node(id="e1", parent_id="root", title="Task")
            tx.nodes["root"].children.append("e1")

        loaded = store.read(ws.id)
        assert loaded.nodes["root"].children == ["e1"]
        assert loaded.nodes["e1"].status == ExecutionStatus.PENDING

    def test_transaction_discards_on_error(self, store: FileWorkspaceStore) -> None:
        ws = store.create(_workspace())
        with pytest.raises(RuntimeError):
            with store.transaction(ws.id) as tx:
                tx.rules.append("half-written")
                raise RuntimeError("boom")

        assert store.read(ws.id).rules == []

    def test_missing_workspace(self, store: FileWorkspaceStore) -> None:
        with pytest.raises(WorkspaceNotFound):
            store.read("ws-missing")
        with pytest.raises(WorkspaceNotFound):
            with store.transaction("ws-missing"):
                pass

    def test_unsafe_ids_are_rejected(self, store: FileWorkspaceStore) -> None:
        with pytest.raises(InvalidParams):
            store.read("../escape")
        ws = store.create(_workspace())
        with pytest.raises(InvalidParams):
            store.read_log(ws.id, "a/b")

    def test_corrupted_document(self, store: FileWorkspaceStore, tmp_path: Path) -> None:
        ws = store.create(_workspace())
        (tmp_path / ".tasktree" / ws.id / "workspace.yaml").write_text("- not\n- a mapping\n", encoding="utf-8")

        with pytest.raises(GraphCorrupted):
            store.read(ws.id)
        with pytest.raises(GraphCorrupted):
            with store.transaction(ws.id):
                pass

    def test_newer_schema_version_is_refused(self, store: FileWorkspaceStore, tmp_path: Path) -> None:
        ws = store.create(_workspace())
        doc = tmp_path / ".tasktree" / ws.id / "workspace.yaml"
        raw = yaml.safe_load(doc.read_text(encoding="utf-8"))
        raw["schema_version"] = 99
        doc.write_text(yaml.safe_dump(raw), encoding="utf-8")

        with pytest.raises(GraphCorrupted) as excinfo:
            store.read(ws.id)
        assert "schema_version" in excinfo.value.message

    def test_document_without_schema_version_loads(self, store: FileWorkspaceStore, tmp_path: Path) -> None:
        ws = store.create(_workspace())
        doc = tmp_path / ".tasktree" / ws.id / "workspace.yaml"
        raw = yaml.safe_load(doc.read_text(encoding="utf-8"))
        del raw["schema_version"]
        doc.write_text(yaml.safe_dump(raw), encoding="utf-8")

        assert store.read(ws.id).name == "demo"

    def test_list_workspace_ids(self, store: FileWorkspaceStore, tmp_path: Path) -> None:
        assert store.list_workspace_ids() == []
        first = store.create(_workspace("a"))
        second = store.create(_workspace("b"))
        (tmp_path / ".tasktree" / "ws-empty").mkdir()
        (tmp_path / ".tasktree" / "logs").mkdir()

        assert store.list_workspace_ids() == sorted([first.id, second.id])

    def test_delete(self, store: FileWorkspaceStore) -> None:
        ws = store.create(_workspace())
        assert store.delete(ws.id) is True
        assert store.exists(ws.id) is False
        assert store.delete(ws.id) is False

    def test_concurrent_transactions(self, store: FileWorkspaceStore) -> None:
        ws = store.create(_workspace())
        errors: list[Exception] = []

        def worker(i: int) -> None:
            try:
                with store.transaction(ws.id) as tx:
                    tx.rules.append(f"rule-{i}")
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(store.read(ws.id).rules) == sorted(f"rule-{i}" for i in range(10))


class TestActivityLogs:
    def test_append_and_read(self, store: FileWorkspaceStore) -> None:
        ws = store.create(_workspace())
        store.append_log(ws.id, "root", LogEntry(timestamp="t1", operator="AI", event="one"))
        store.append_log(ws.id, "root", LogEntry(timestamp="t2", operator="Human", event="two"))
        store.append_log(ws.id, None, LogEntry(timestamp="t3", operator="system", event="ws"))

        assert [e.event for e in store.read_log(ws.id, "root")] == ["one", "two"]
        assert [e.event for e in store.read_log(ws.id, None)] == ["ws"]
        assert store.read_log(ws.id, "other") == []

    def test_torn_line_is_skipped(self, store: FileWorkspaceStore, tmp_path: Path) -> None:
        ws = store.create(_workspace())
        store.append_log(ws.id, "root", LogEntry(timestamp="t1", operator="AI", event="one"))
        path = tmp_path / ".tasktree" / ws.id / "logs" / "root.jsonl"
        with open(path, "a", encoding="utf-8") as handle:
            handle.write('{"timestamp": "t2", "oper')

        assert [e.event for e in store.read_log(ws.id, "root")] == ["one"]

    def test_delete_logs(self, store: FileWorkspaceStore) -> None:
        ws = store.create(_workspace())
        store.append_log(ws.id, "root", LogEntry(timestamp="t1", operator="AI", event="one"))
        store.delete_logs(ws.id, ["root", "never-logged"])
        assert store.read_log(ws.id, "root") == []
