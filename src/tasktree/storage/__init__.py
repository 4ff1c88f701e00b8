from .file_store import FileWorkspaceStore
from .interfaces import WorkspaceStore

__all__ = ["FileWorkspaceStore", "WorkspaceStore"]
