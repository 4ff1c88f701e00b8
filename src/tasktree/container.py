from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .config import get_branch_prefix, get_context_max_log_entries, get_dispatch_config, load_project_config
from .context import ContextOptions, ContextView, build_context
from .dispatch import (
    CompleteResult,
    DisableOptions,
    DisableResult,
    DispatchEngine,
    EnableResult,
    PrepareResult,
    SwitchModeResult,
)
from .engine import NodeEngine, TransitionResult
from .logging_utils import pretty, summarize_dispatch, summarize_transition
from .models import Workspace
from .storage import FileWorkspaceStore
from .vcs import GitAdapter, VcsAdapter


class TaskTree:
    """All task-tree services for one project directory.

    ``vcs`` defaults to a :class:`GitAdapter` on the project directory;
    pass a fake adapter in tests.
    """

    def __init__(self, project_dir: Path, vcs: Optional[VcsAdapter] = None) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.config, err = load_project_config(self.project_dir)
        if err:
            logger.warning("Ignoring unreadable project config: {}", err)

        self.store = FileWorkspaceStore(self.project_dir)
        self.vcs = vcs if vcs is not None else GitAdapter(self.project_dir)
        self.nodes = NodeEngine(self.store)
        self.dispatch = DispatchEngine(
            self.store,
            self.vcs,
            settings=get_dispatch_config(self.config),
            branch_prefix=get_branch_prefix(self.config),
        )
        self.max_log_entries = get_context_max_log_entries(self.config)

    # -- workspaces ---------------------------------------------------------

    def create_workspace(self, name: str, goal: str = "", rules: Optional[list[str]] = None, docs: Optional[list[dict[str, str]]] = None) -> Workspace:
        return self.nodes.create_workspace(name, goal=goal, rules=rules, docs=docs)

    def list_workspaces(self) -> list[dict[str, Any]]:
        summaries = []
        for workspace_id in self.store.list_workspace_ids():
            ws = self.store.read(workspace_id)
            summaries.append(
                {
                    "id": ws.id,
                    "name": ws.name,
                    "goal": ws.goal,
                    "nodes": len(ws.nodes),
                    "dispatch_enabled": ws.dispatch_enabled,
                    "updated_at": ws.updated_at,
                }
            )
        return summaries

    def get_workspace(self, workspace_id: str) -> Workspace:
        return self.store.read(workspace_id)

    def delete_workspace(self, workspace_id: str) -> bool:
        return self.store.delete(workspace_id)

    # -- nodes --------------------------------------------------------------

    def transition(
        self,
        workspace_id: str,
        node_id: str,
        action: str,
        conclusion: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        result = self.nodes.transition(workspace_id, node_id, action, conclusion=conclusion, reason=reason)
        logger.debug("transition {}", pretty(summarize_transition(result)))
        return result

    def get_context(
        self,
        workspace_id: str,
        node_id: str,
        options: Union[ContextOptions, dict[str, Any], None] = None,
    ) -> ContextView:
        if options is None:
            options = ContextOptions(max_log_entries=self.max_log_entries)
        elif isinstance(options, dict):
            options = ContextOptions(**{"max_log_entries": self.max_log_entries, **options})
        snapshot = self.store.read(workspace_id)
        # logs are append-only and written outside workspace transactions, so
        # their tails are read after the snapshot lock is released
        return build_context(
            snapshot,
            lambda nid: self.store.read_log(workspace_id, nid),
            node_id,
            options,
        )

    # -- dispatch -----------------------------------------------------------

    def dispatch_enable(self, workspace_id: str, use_vcs: Optional[bool] = None) -> EnableResult:
        result = self.dispatch.enable(workspace_id, use_vcs=use_vcs)
        logger.debug("dispatch {}", pretty(summarize_dispatch(result)))
        return result

    def dispatch_prepare(self, workspace_id: str, node_id: str) -> PrepareResult:
        result = self.dispatch.prepare(workspace_id, node_id)
        logger.debug("dispatch {}", pretty(summarize_dispatch(result)))
        return result

    def dispatch_complete(self, workspace_id: str, node_id: str, success: bool, conclusion: Optional[str] = None) -> CompleteResult:
        result = self.dispatch.complete(workspace_id, node_id, success, conclusion)
        logger.debug("dispatch {}", pretty(summarize_dispatch(result)))
        return result

    def dispatch_verify(self, workspace_id: str, node_id: str, passed: bool, conclusion: Optional[str] = None) -> CompleteResult:
        result = self.dispatch.verify(workspace_id, node_id, passed, conclusion)
        logger.debug("dispatch {}", pretty(summarize_dispatch(result)))
        return result

    def dispatch_disable(
        self,
        workspace_id: str,
        options: Union[DisableOptions, dict[str, Any], None] = None,
    ) -> DisableResult:
        result = self.dispatch.disable(workspace_id, options)
        logger.debug("dispatch {}", pretty(summarize_dispatch(result)))
        return result

    def dispatch_switch_mode(self, workspace_id: str, use_vcs: bool) -> SwitchModeResult:
        result = self.dispatch.switch_mode(workspace_id, use_vcs)
        logger.debug("dispatch {}", pretty(summarize_dispatch(result)))
        return result

    def dispatch_status(self, workspace_id: str) -> dict[str, Any]:
        return self.dispatch.status(workspace_id)
