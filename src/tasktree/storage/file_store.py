"""File-based workspace store.

Each workspace lives in ``<project>/.tasktree/<workspace-id>/`` as a single
``workspace.yaml`` document (configuration plus the whole node graph) and a
``logs/`` directory of JSON-lines activity logs. All writes go through
:meth:`FileWorkspaceStore.transaction`, which holds the workspace lock for
the full read-modify-write.
"""

from __future__ import annotations

import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from ..constants import (
    DISPATCH_LOCK_FILE,
    LOGS_DIR,
    SCHEMA_VERSION,
    STATE_DIR_NAME,
    WORKSPACE_FILE,
    WORKSPACE_ID_PREFIX,
    WORKSPACE_LOCK_FILE,
    WORKSPACE_LOG_FILE,
)
from ..coordinator import get_lock_coordinator
from ..errors import GraphCorrupted, InvalidParams, WorkspaceNotFound
from ..io_utils import _append_jsonl, _atomic_write_yaml, _load_yaml_with_error, _read_jsonl
from ..models import LogEntry, Workspace, now_iso
from .interfaces import WorkspaceStore

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def _check_id(value: str, kind: str) -> str:
    if not value or not _SAFE_ID_RE.match(value) or value in {".", ".."}:
        raise InvalidParams(f"Invalid {kind} id '{value}'", **{f"{kind}_id": value})
    return value


class FileWorkspaceStore(WorkspaceStore):
    """Thread- and process-safe store for the workspaces of one project.

    Parameters
    ----------
    project_root:
        Project directory; state lives in its ``.tasktree/`` subdirectory.
    """

    def __init__(self, project_root: Path) -> None:
        self._project_root = Path(project_root).resolve()
        self._state_dir = self._project_root / STATE_DIR_NAME
        self._locks = get_lock_coordinator()

    # -- paths --------------------------------------------------------------

    @property
    def project_root(self) -> Path:
        return self._project_root

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _workspace_dir(self, workspace_id: str) -> Path:
        return self._state_dir / _check_id(workspace_id, "workspace")

    def _document_path(self, workspace_id: str) -> Path:
        return self._workspace_dir(workspace_id) / WORKSPACE_FILE

    def _lock_path(self, workspace_id: str) -> Path:
        return self._workspace_dir(workspace_id) / WORKSPACE_LOCK_FILE

    def _log_path(self, workspace_id: str, node_id: Optional[str]) -> Path:
        logs_dir = self._workspace_dir(workspace_id) / LOGS_DIR
        if node_id is None:
            return logs_dir / WORKSPACE_LOG_FILE
        return logs_dir / f"{_check_id(node_id, 'node')}.jsonl"

    def dispatch_lock_path(self) -> Path:
        return self._state_dir / DISPATCH_LOCK_FILE

    # -- low-level I/O ------------------------------------------------------

    def _load(self, workspace_id: str) -> Workspace:
        path = self._document_path(workspace_id)
        if not path.exists():
            raise WorkspaceNotFound(f"Workspace '{workspace_id}' does not exist", workspace_id=workspace_id)
        data, err = _load_yaml_with_error(path)
        if err:
            raise GraphCorrupted(err, workspace_id=workspace_id)
        version = data.get("schema_version", SCHEMA_VERSION)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise GraphCorrupted(
                f"{path.name}: unsupported schema_version {version!r} (expected <= {SCHEMA_VERSION})",
                workspace_id=workspace_id,
            )
        try:
            return Workspace.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise GraphCorrupted(f"{path.name}: {exc}", workspace_id=workspace_id) from exc

    def _save(self, workspace: Workspace) -> None:
        payload = {"schema_version": SCHEMA_VERSION}
        payload.update(workspace.to_dict())
        _atomic_write_yaml(self._document_path(workspace.id), payload)

    # -- public API ---------------------------------------------------------

    def list_workspace_ids(self) -> list[str]:
        if not self._state_dir.exists():
            return []
        ids = [
            entry.name
            for entry in self._state_dir.iterdir()
            if entry.is_dir() and entry.name.startswith(WORKSPACE_ID_PREFIX) and (entry / WORKSPACE_FILE).exists()
        ]
        return sorted(ids)

    def exists(self, workspace_id: str) -> bool:
        return self._document_path(workspace_id).exists()

    def create(self, workspace: Workspace) -> Workspace:
        with self._locks.hold(self._lock_path(workspace.id), name=f"workspace {workspace.id}"):
            if self._document_path(workspace.id).exists():
                raise InvalidParams(f"Workspace '{workspace.id}' already exists", workspace_id=workspace.id)
            workspace.project_root = str(self._project_root)
            self._save(workspace)
        logger.info("Created workspace {} in {}", workspace.id, self._state_dir)
        return workspace

    def read(self, workspace_id: str) -> Workspace:
        """Return a consistent snapshot (no lock held after return)."""
        with self._locks.hold(self._lock_path(workspace_id), name=f"workspace {workspace_id}"):
            return self._load(workspace_id)

    @contextmanager
    def transaction(self, workspace_id: str) -> Iterator[Workspace]:
        """Acquire the lock, load the workspace, yield it, and save on exit.

        Usage::

            with store.transaction("ws-abc") as ws:
                ws.nodes["root"].isolate = True
                # saved on clean exit, discarded if the body raises
        """
        if not self._document_path(workspace_id).exists():
            raise WorkspaceNotFound(f"Workspace '{workspace_id}' does not exist", workspace_id=workspace_id)
        with self._locks.hold(self._lock_path(workspace_id), name=f"workspace {workspace_id}"):
            workspace = self._load(workspace_id)
            yield workspace
            workspace.updated_at = now_iso()
            self._save(workspace)

    def delete(self, workspace_id: str) -> bool:
        ws_dir = self._workspace_dir(workspace_id)
        if not ws_dir.exists():
            return False
        with self._locks.hold(self._lock_path(workspace_id), name=f"workspace {workspace_id}"):
            self._document_path(workspace_id).unlink(missing_ok=True)
        shutil.rmtree(ws_dir, ignore_errors=True)
        logger.info("Deleted workspace {}", workspace_id)
        return True

    def append_log(self, workspace_id: str, node_id: Optional[str], entry: LogEntry) -> None:
        _append_jsonl(self._log_path(workspace_id, node_id), entry.to_dict())

    def read_log(self, workspace_id: str, node_id: Optional[str]) -> list[LogEntry]:
        return [LogEntry.from_dict(raw) for raw in _read_jsonl(self._log_path(workspace_id, node_id))]

    def delete_logs(self, workspace_id: str, node_ids: list[str]) -> None:
        for node_id in node_ids:
            self._log_path(workspace_id, node_id).unlink(missing_ok=True)
