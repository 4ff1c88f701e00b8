from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Optional

from ..models import LogEntry, Workspace


class WorkspaceStore(ABC):
    """Persistence for the workspaces of one project.

    ``transaction`` is the single-writer region: it loads the workspace,
    yields it for mutation and writes the whole document back only when the
    body finishes without raising.
    """

    @property
    @abstractmethod
    def project_root(self) -> Path:
        raise NotImplementedError

    @abstractmethod
    def list_workspace_ids(self) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def exists(self, workspace_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def create(self, workspace: Workspace) -> Workspace:
        raise NotImplementedError

    @abstractmethod
    def read(self, workspace_id: str) -> Workspace:
        raise NotImplementedError

    @abstractmethod
    def transaction(self, workspace_id: str) -> AbstractContextManager[Workspace]:
        raise NotImplementedError

    @abstractmethod
    def delete(self, workspace_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def append_log(self, workspace_id: str, node_id: Optional[str], entry: LogEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    def read_log(self, workspace_id: str, node_id: Optional[str]) -> list[LogEntry]:
        raise NotImplementedError

    @abstractmethod
    def delete_logs(self, workspace_id: str, node_ids: list[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def dispatch_lock_path(self) -> Path:
        raise NotImplementedError
