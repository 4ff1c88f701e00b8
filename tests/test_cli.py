"""Tests for the tasktree command line interface."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from loguru import logger

from tasktree.cli import main


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    # main() points loguru at the captured stderr of the current test
    logger.remove()


def _run(capsys: pytest.CaptureFixture[str], project: Path, *argv: str) -> tuple[int, Any, str]:
    code = main(["--project-dir", str(project), *argv])
    captured = capsys.readouterr()
    payload = json.loads(captured.out) if code == 0 and captured.out.lstrip().startswith("{") else None
    return code, payload, captured.err


@pytest.fixture
def workspace(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> str:
    code, payload, _ = _run(capsys, tmp_path, "workspace", "create", "demo", "--goal", "Ship", "--rule", "no force push")
    assert code == 0
    return payload["workspace_id"]


def _create_node(capsys, project: Path, ws_id: str, parent: str, node_type: str, title: str) -> str:
    code, payload, _ = _run(capsys, project, "node", "create", ws_id, parent, node_type, title)
    assert code == 0
    return payload["node"]["id"]


def test_workspace_list(tmp_path: Path, capsys, workspace: str) -> None:
    code, payload, _ = _run(capsys, tmp_path, "workspace", "list")
    assert code == 0
    assert [w["id"] for w in payload["workspaces"]] == [workspace]
    assert payload["workspaces"][0]["nodes"] == 1


def test_transition_and_context(tmp_path: Path, capsys, workspace: str) -> None:
    node_id = _create_node(capsys, tmp_path, workspace, "root", "execution", "Write code")

    code, payload, _ = _run(capsys, tmp_path, "transition", workspace, node_id, "start")
    assert code == 0
    assert payload["current_status"] == "implementing"
    assert [(c["from"], c["to"]) for c in payload["cascade_updates"]] == [
        ("pending", "planning"),
        ("planning", "monitoring"),
    ]

    _run(capsys, tmp_path, "log", workspace, "halfway there", "--node", node_id)
    code, payload, _ = _run(capsys, tmp_path, "context", workspace, node_id, "--max-log-entries", "1")
    assert code == 0
    assert [f["node_id"] for f in payload["chain"]] == ["root", node_id]
    assert [e["event"] for e in payload["chain"][-1]["log"]] == ["halfway there"]
    assert payload["workspace"]["rules"] == ["no force push"]


def test_errors_are_reported_as_json(tmp_path: Path, capsys, workspace: str) -> None:
    node_id = _create_node(capsys, tmp_path, workspace, "root", "execution", "Write code")
    _run(capsys, tmp_path, "transition", workspace, node_id, "start")

    code, _, err = _run(capsys, tmp_path, "transition", workspace, node_id, "complete")

    assert code == 1
    assert json.loads(err.strip().splitlines()[-1])["error"]["code"] == "CONCLUSION_REQUIRED"


def test_unknown_workspace(tmp_path: Path, capsys) -> None:
    code, _, err = _run(capsys, tmp_path, "tree", "ws-missing", "--json")
    assert code == 1
    assert "WORKSPACE_NOT_FOUND" in err


def test_tree_output(tmp_path: Path, capsys, workspace: str) -> None:
    node_id = _create_node(capsys, tmp_path, workspace, "root", "planning", "Phase one")

    code, payload, _ = _run(capsys, tmp_path, "tree", workspace, "--json")
    assert code == 0
    assert payload["children"][0]["id"] == node_id

    code = main(["--project-dir", str(tmp_path), "tree", workspace])
    out = capsys.readouterr().out
    assert code == 0
    assert "Phase one" in out
    assert workspace in out


def test_problem_and_reference(tmp_path: Path, capsys, workspace: str) -> None:
    a = _create_node(capsys, tmp_path, workspace, "root", "execution", "A")
    b = _create_node(capsys, tmp_path, workspace, "root", "execution", "B")

    code, payload, _ = _run(capsys, tmp_path, "problem", workspace, a, "stuck", "--next-step", "ask")
    assert code == 0
    assert payload == {"node_id": a, "problem": "stuck", "next_step": "ask"}

    code, _, err = _run(capsys, tmp_path, "problem", workspace, a)
    assert code == 1
    assert "INVALID_PARAMS" in err

    code, payload, _ = _run(capsys, tmp_path, "reference", workspace, a, b, "add", "--description", "shares schema")
    assert code == 0
    assert payload["references"][0]["path"] == b


def test_dispatch_without_git(tmp_path: Path, capsys, workspace: str) -> None:
    node_id = _create_node(capsys, tmp_path, workspace, "root", "execution", "Task")
    _run(capsys, tmp_path, "transition", workspace, node_id, "start")

    code, payload, _ = _run(capsys, tmp_path, "dispatch", "enable", workspace, "--no-git")
    assert code == 0
    assert payload["config"]["use_vcs"] is False

    code, payload, _ = _run(capsys, tmp_path, "dispatch", "mode", workspace, "--no-git")
    assert code == 0
    assert payload["changed"] is False

    code, payload, _ = _run(capsys, tmp_path, "dispatch", "prepare", workspace, node_id)
    assert code == 0
    assert payload["work_unit"]["node_id"] == node_id

    code, payload, _ = _run(
        capsys, tmp_path, "dispatch", "complete", workspace, node_id, "--success", "--conclusion", "done"
    )
    assert code == 0
    assert payload["next_status"] == "completed"

    code, payload, _ = _run(capsys, tmp_path, "dispatch", "disable", workspace)
    assert code == 0
    assert payload["merged"] is False

    code, payload, _ = _run(capsys, tmp_path, "dispatch", "status", workspace)
    assert payload["enabled"] is False
