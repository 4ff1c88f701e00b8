"""Dispatch engine: isolated execution of one unit of work at a time.

A workspace in dispatch mode hands execution nodes to an external worker.
``prepare`` records a start marker (a commit on the isolation branch, or a
millisecond timestamp without VCS) and describes the work; ``complete`` and
``verify`` either advance the node or roll the working tree back to the
marker; ``disable`` merges the isolation branch into the original branch.

Only one dispatch session may be active per project. Every check-then-act
section below runs under the project dispatch lock, and VCS side effects
happen before any state is stored, so a failing git command leaves the
stored dispatch state untouched.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Literal, Optional, Union

from loguru import logger
from pydantic import BaseModel

from .constants import (
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_DISPATCH_MAX_RETRIES,
    DEFAULT_DISPATCH_MODE,
    DEFAULT_DISPATCH_TIMEOUT_MS,
    OPERATOR_EXECUTOR,
    OPERATOR_SYSTEM,
    OPERATOR_VERIFIER,
)
from .coordinator import get_lock_coordinator
from .engine import TransitionResult, get_node, transition_in_place, transition_log_event
from .errors import (
    ConclusionRequired,
    DispatchAlreadyEnabled,
    DispatchConcurrencyConflict,
    DispatchInProgress,
    DispatchNotEnabled,
    DispatchNotPrepared,
    GraphCorrupted,
    InvalidNodeType,
    InvalidTransition,
    VcsOperationFailed,
)
from .fsm import validate_transition
from .models import (
    Action,
    DispatchConfig,
    DispatchLimits,
    DispatchStatus,
    ExecutionStatus,
    LogEntry,
    Node,
    NodeDispatch,
    Workspace,
    now_iso,
)
from .storage.interfaces import WorkspaceStore
from .vcs import VcsAdapter


def _now_ms() -> int:
    return int(time.time() * 1000)


def _mode_label(use_vcs: bool) -> str:
    return "git" if use_vcs else "no VCS"


class DisableOptions(BaseModel):
    merge_strategy: Literal["sequential", "squash", "cherry-pick", "skip"] = "sequential"
    keep_backup_branch: bool = False
    keep_process_branch: bool = False
    commit_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class WorkUnit:
    """Description of the work handed to an external worker."""

    workspace_id: str
    node_id: str
    title: str
    requirement: str
    prompt: str
    timeout_ms: int
    max_retries: int
    use_vcs: bool
    start_marker: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EnableResult:
    enabled: bool
    config: DispatchConfig
    stale_branches: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"enabled": self.enabled, "config": self.config.to_dict()}
        if self.stale_branches:
            data["stale_branches"] = list(self.stale_branches)
        return data


@dataclass
class PrepareResult:
    start_marker: str
    work_unit: WorkUnit

    def to_dict(self) -> dict[str, Any]:
        return {"start_marker": self.start_marker, "work_unit": self.work_unit.to_dict()}


@dataclass
class CompleteResult:
    node_id: str
    success: bool
    end_marker: Optional[str]
    next_status: str
    dispatch_status: str
    verifier_id: Optional[str] = None
    rolled_back: bool = False
    transition: Optional[TransitionResult] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "node_id": self.node_id,
            "success": self.success,
            "end_marker": self.end_marker,
            "next_status": self.next_status,
            "dispatch_status": self.dispatch_status,
            "rolled_back": self.rolled_back,
        }
        if self.verifier_id:
            data["verifier_id"] = self.verifier_id
        if self.transition is not None:
            data["cascade_updates"] = [c.to_dict() for c in self.transition.cascade_updates]
        return data


@dataclass
class DisableResult:
    merged: bool
    message: str
    strategy: Optional[str] = None
    deleted_branches: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SwitchModeResult:
    use_vcs: bool
    previous: bool
    changed: bool
    config: DispatchConfig

    def to_dict(self) -> dict[str, Any]:
        return {
            "use_vcs": self.use_vcs,
            "previous": self.previous,
            "changed": self.changed,
            "config": self.config.to_dict(),
        }


_STRATEGY_MESSAGES = {
    "sequential": "Merged every dispatch commit onto {target}",
    "squash": "Squashed dispatch work into one commit on {target}",
    "cherry-pick": "Applied dispatch changes to the working tree of {target} without committing",
    "skip": "Switched back to {target}; isolation branch kept",
}


def build_executor_prompt(workspace_id: str, node: Node) -> str:
    return (
        f"Execute the task for node {node.id}.\n"
        f"\n"
        f"Workspace: {workspace_id}\n"
        f"Node: {node.id}\n"
        f"Title: {node.title}\n"
        f"\n"
        f"1. Load the node context for {node.id} before changing anything.\n"
        f"2. Stay within the scope of the requirement.\n"
        f"3. Append progress to the node log as you go.\n"
        f"4. Finish with dispatch complete for {node.id}: success=true with a conclusion, "
        f"or success=false with the reason.\n"
        f"\n"
        f"Do not transition the node directly; the dispatch engine owns its status."
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DispatchEngine:
    """Coordinate dispatch sessions for one project.

    Parameters
    ----------
    store:
        Workspace store of the project.
    vcs:
        Adapter for the project repository, or ``None`` when the project is
        not under version control.
    settings:
        Dispatch settings (``default_mode``, ``timeout_ms``, ``max_retries``)
        as returned by :func:`tasktree.config.get_dispatch_config`.
    branch_prefix:
        Prefix of the isolation and backup branch names.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        vcs: Optional[VcsAdapter] = None,
        settings: Optional[dict[str, Any]] = None,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
    ) -> None:
        self.store = store
        self.vcs = vcs
        settings = settings or {}
        self.default_mode = settings.get("default_mode", DEFAULT_DISPATCH_MODE)
        self.timeout_ms = int(settings.get("timeout_ms", DEFAULT_DISPATCH_TIMEOUT_MS))
        self.max_retries = int(settings.get("max_retries", DEFAULT_DISPATCH_MAX_RETRIES))
        self.branch_prefix = branch_prefix
        self._locks = get_lock_coordinator()

    # -- helpers ------------------------------------------------------------

    @contextmanager
    def _project_lock(self) -> Iterator[None]:
        with self._locks.hold(self.store.dispatch_lock_path(), name="project dispatch"):
            yield

    def process_branch_name(self, workspace_id: str) -> str:
        return f"{self.branch_prefix}/process/{workspace_id}"

    def backup_branch_name(self, workspace_id: str, stamp: int) -> str:
        return f"{self.branch_prefix}/backup/{workspace_id}/{stamp}"

    def _log(self, workspace_id: str, node_id: Optional[str], operator: str, event: str) -> None:
        self.store.append_log(workspace_id, node_id, LogEntry(timestamp=now_iso(), operator=operator, event=event))

    def _require_vcs(self) -> VcsAdapter:
        if self.vcs is None or not self.vcs.is_repository():
            raise VcsOperationFailed("Project is not a git repository", project_root=str(self.store.project_root))
        return self.vcs

    def _read_enabled(self, workspace_id: str) -> Workspace:
        ws = self.store.read(workspace_id)
        if not ws.dispatch_enabled:
            raise DispatchNotEnabled(f"Dispatch is not enabled for workspace '{workspace_id}'", workspace_id=workspace_id)
        return ws

    def _check_project_conflict(self, workspace_id: str, use_vcs: bool) -> list[str]:
        """Raise if any other workspace of the project holds a dispatch session.

        Returns isolation branches of other workspaces that outlived their
        session (``skip`` keeps them); these are reported, not refused.
        """
        for other_id in self.store.list_workspace_ids():
            if other_id == workspace_id:
                continue
            try:
                other = self.store.read(other_id)
            except GraphCorrupted as exc:
                logger.warning("Skipping unreadable workspace {} during conflict check: {}", other_id, exc)
                continue
            active = other.active_dispatch_nodes()
            if other.dispatch_enabled or active:
                holder = active[0].id if active else None
                raise DispatchConcurrencyConflict(
                    f"Workspace '{other_id}' already has an active dispatch session",
                    workspace_id=other_id,
                    node_id=holder,
                )
        if not use_vcs or self.vcs is None:
            return []
        own = self.process_branch_name(workspace_id)
        stale = [b for b in self.vcs.list_branches(f"{self.branch_prefix}/process/*") if b != own]
        for branch in stale:
            logger.warning("Isolation branch {} has no active dispatch session; merge or delete it", branch)
        return stale

    def _rollback(self, ws: Workspace, marker: str) -> None:
        # the reset must land on the isolation branch, not whatever is checked out
        vcs = self._require_vcs()
        vcs.checkout(ws.dispatch.process_branch)
        vcs.hard_reset(marker)

    def _open_isolation(self, vcs: VcsAdapter, workspace_id: str, stamp: int) -> tuple[str, str, list[str]]:
        """Move the repository onto a fresh isolation branch.

        Returns ``(original_branch, process_branch, backup_branches)``.
        """
        vcs.prepare()
        original_branch = vcs.current_branch()
        if not original_branch or original_branch == "HEAD":
            raise VcsOperationFailed("Cannot enable dispatch on a detached HEAD", branch=original_branch)
        process_branch = self.process_branch_name(workspace_id)
        if vcs.branch_exists(process_branch):
            raise VcsOperationFailed(
                f"Isolation branch '{process_branch}' already exists; merge or delete it first",
                branch=process_branch,
            )
        backups: list[str] = []
        if vcs.has_uncommitted_changes():
            backup = self.backup_branch_name(workspace_id, stamp)
            vcs.create_isolation_branch(backup)
            vcs.commit(f"tasktree: backup before dispatch - {workspace_id}")
            backups.append(backup)
            logger.info("Saved uncommitted work of {} on {}", original_branch, backup)
        vcs.create_isolation_branch(process_branch)
        return original_branch, process_branch, backups

    def _busy_nodes(self, ws: Workspace) -> list[str]:
        return [
            n.id
            for n in ws.nodes.values()
            if n.dispatch and n.dispatch.status in (DispatchStatus.EXECUTING, DispatchStatus.TESTING)
        ]

    def _find_verifier(self, ws: Workspace, node: Node) -> Optional[Node]:
        parent = ws.nodes.get(node.parent_id or "")
        if parent is None:
            return None
        for sibling_id in parent.children:
            sibling = ws.nodes.get(sibling_id)
            if sibling is not None and sibling.is_execution and sibling.verifies == node.id:
                return sibling
        return None

    # -- operations ---------------------------------------------------------

    def enable(self, workspace_id: str, use_vcs: Optional[bool] = None) -> EnableResult:
        """Turn on dispatch mode for *workspace_id*.

        With ``use_vcs`` unset the configured ``dispatch.default_mode``
        decides. In VCS mode uncommitted work is first snapshotted onto a
        backup branch, then the isolation branch is created from there.
        """
        with self._project_lock():
            ws = self.store.read(workspace_id)
            if ws.dispatch_enabled:
                raise DispatchAlreadyEnabled(workspace_id=workspace_id)
            if use_vcs is None:
                use_vcs = self.default_mode == "git"

            vcs = self._require_vcs() if use_vcs else None
            stale = self._check_project_conflict(workspace_id, bool(use_vcs))

            stamp = _now_ms()
            original_branch: Optional[str] = None
            process_branch: Optional[str] = None
            backups: list[str] = []
            if vcs is not None:
                original_branch, process_branch, backups = self._open_isolation(vcs, workspace_id, stamp)

            with self.store.transaction(workspace_id) as ws:
                ws.dispatch = DispatchConfig(
                    enabled=True,
                    use_vcs=bool(use_vcs),
                    enabled_at=stamp,
                    original_branch=original_branch,
                    process_branch=process_branch,
                    backup_branches=backups,
                    limits=DispatchLimits(timeout_ms=self.timeout_ms, max_retries=self.max_retries),
                )
                config = ws.dispatch

        mode = f"git, branch {process_branch}" if use_vcs else "no VCS"
        logger.info("Dispatch enabled for {} ({})", workspace_id, mode)
        self._log(workspace_id, None, OPERATOR_SYSTEM, f"dispatch enabled ({mode})")
        return EnableResult(enabled=True, config=config, stale_branches=stale)

    def prepare(self, workspace_id: str, node_id: str) -> PrepareResult:
        """Record the start marker for *node_id* and describe its work unit.

        The node must be an execution node in ``implementing``; the task
        itself is never run here.
        """
        with self._project_lock():
            ws = self._read_enabled(workspace_id)
            node = get_node(ws, node_id)
            self._check_preparable(node)
            active = ws.active_dispatch_nodes()
            if active:
                raise DispatchConcurrencyConflict(
                    f"Node '{active[0].id}' is already dispatched",
                    workspace_id=workspace_id,
                    node_id=active[0].id,
                )

            use_vcs = ws.dispatch.use_vcs
            if use_vcs:
                vcs = self._require_vcs()
                vcs.checkout(ws.dispatch.process_branch)
                marker = vcs.head()
                if not marker:
                    raise VcsOperationFailed("Isolation branch has no commits", branch=ws.dispatch.process_branch)
            else:
                marker = str(_now_ms())

            with self.store.transaction(workspace_id) as ws:
                node = get_node(ws, node_id)
                self._check_preparable(node)
                node.dispatch = NodeDispatch(use_vcs=use_vcs, start_marker=marker, status=DispatchStatus.EXECUTING)
                node.touch()
                limits = ws.dispatch.limits

        unit = WorkUnit(
            workspace_id=workspace_id,
            node_id=node.id,
            title=node.title,
            requirement=node.requirement,
            prompt=build_executor_prompt(workspace_id, node),
            timeout_ms=limits.timeout_ms,
            max_retries=limits.max_retries,
            use_vcs=use_vcs,
            start_marker=marker,
        )
        logger.info("Prepared dispatch of {}/{} at {}", workspace_id, node_id, marker)
        self._log(workspace_id, node_id, OPERATOR_SYSTEM, f"dispatch prepared, start marker {marker}")
        return PrepareResult(start_marker=marker, work_unit=unit)

    @staticmethod
    def _check_preparable(node: Node) -> None:
        if not node.is_execution:
            raise InvalidNodeType(f"Only execution nodes can be dispatched, '{node.id}' is {node.type.value}", node_id=node.id)
        if node.status != ExecutionStatus.IMPLEMENTING:
            raise InvalidTransition(
                f"Node '{node.id}' must be implementing to be dispatched, it is {node.status.value}",
                node_id=node.id,
                status=node.status.value,
            )

    def complete(
        self,
        workspace_id: str,
        node_id: str,
        success: bool,
        conclusion: Optional[str] = None,
    ) -> CompleteResult:
        """Finish the executing dispatch of *node_id*.

        Success commits the work (or stamps a timestamp) and either hands the
        node to its verification sibling or completes it. Failure rolls the
        working tree back to the start marker and fails the node.
        """
        with self._project_lock():
            ws = self._read_enabled(workspace_id)
            node = get_node(ws, node_id)
            if node.dispatch is None or node.dispatch.status != DispatchStatus.EXECUTING:
                raise DispatchNotPrepared(f"Node '{node_id}' has no executing dispatch", node_id=node_id)
            if not (conclusion or "").strip():
                raise ConclusionRequired("Dispatch completion requires a conclusion", node_id=node_id)

            verifier = self._find_verifier(ws, node) if success else None
            if not success:
                action = Action.FAIL
            elif verifier is not None:
                action = Action.SUBMIT
            else:
                action = Action.COMPLETE
            validate_transition(node, action, conclusion)

            use_vcs = node.dispatch.use_vcs
            end_marker: Optional[str] = None
            if success:
                if use_vcs:
                    vcs = self._require_vcs()
                    vcs.checkout(ws.dispatch.process_branch)
                    end_marker = vcs.commit(f"tasktree: {node.id} - {node.title}") or vcs.head()
                else:
                    end_marker = str(_now_ms())
            elif use_vcs:
                self._rollback(ws, node.dispatch.start_marker)

            with self.store.transaction(workspace_id) as ws:
                record = get_node(ws, node_id).dispatch
                record.end_marker = end_marker
                if action == Action.SUBMIT:
                    record.status = DispatchStatus.TESTING
                    record.conclusion = conclusion
                    result = transition_in_place(ws, node_id, Action.SUBMIT)
                elif action == Action.COMPLETE:
                    record.status = DispatchStatus.PASSED
                    result = transition_in_place(ws, node_id, Action.COMPLETE, conclusion)
                else:
                    record.status = DispatchStatus.FAILED
                    result = transition_in_place(ws, node_id, Action.FAIL, conclusion)
                dispatch_status = record.status.value

        if success:
            logger.info("Dispatch of {}/{} finished at {} -> {}", workspace_id, node_id, end_marker, dispatch_status)
            self._log(workspace_id, node_id, OPERATOR_EXECUTOR, f"dispatch finished, end marker {end_marker}: {conclusion}")
        else:
            logger.warning("Dispatch of {}/{} failed: {}", workspace_id, node_id, conclusion)
            self._log(workspace_id, node_id, OPERATOR_EXECUTOR, f"dispatch failed: {conclusion}")
        self._log(workspace_id, node_id, OPERATOR_SYSTEM, transition_log_event(result))

        return CompleteResult(
            node_id=node_id,
            success=success,
            end_marker=end_marker,
            next_status=result.current_status,
            dispatch_status=dispatch_status,
            verifier_id=verifier.id if verifier is not None else None,
            rolled_back=bool(use_vcs and not success),
            transition=result,
        )

    def verify(
        self,
        workspace_id: str,
        node_id: str,
        passed: bool,
        conclusion: Optional[str] = None,
    ) -> CompleteResult:
        """Resolve a dispatch waiting in ``testing`` on its verification result."""
        with self._project_lock():
            ws = self._read_enabled(workspace_id)
            node = get_node(ws, node_id)
            if node.dispatch is None or node.dispatch.status != DispatchStatus.TESTING:
                raise DispatchNotPrepared(f"Node '{node_id}' has no dispatch awaiting verification", node_id=node_id)
            final = (conclusion or "").strip() or (node.dispatch.conclusion if passed else "")
            action = Action.COMPLETE if passed else Action.FAIL
            validate_transition(node, action, final)

            use_vcs = node.dispatch.use_vcs
            if not passed and use_vcs:
                self._rollback(ws, node.dispatch.start_marker)

            with self.store.transaction(workspace_id) as ws:
                record = get_node(ws, node_id).dispatch
                record.status = DispatchStatus.PASSED if passed else DispatchStatus.FAILED
                result = transition_in_place(ws, node_id, action, final)
                end_marker = record.end_marker
                dispatch_status = record.status.value

        verdict = "passed" if passed else "failed"
        logger.info("Verification of {}/{} {}", workspace_id, node_id, verdict)
        self._log(workspace_id, node_id, OPERATOR_VERIFIER, f"verification {verdict}: {final}")
        self._log(workspace_id, node_id, OPERATOR_SYSTEM, transition_log_event(result))
        return CompleteResult(
            node_id=node_id,
            success=passed,
            end_marker=end_marker,
            next_status=result.current_status,
            dispatch_status=dispatch_status,
            rolled_back=bool(use_vcs and not passed),
            transition=result,
        )

    def disable(
        self,
        workspace_id: str,
        options: Union[DisableOptions, dict[str, Any], None] = None,
    ) -> DisableResult:
        """Leave dispatch mode, merging the isolation branch in VCS mode.

        Refuses while a dispatch is executing or under verification. A merge
        conflict is aborted and raised; dispatch then stays enabled.
        """
        if options is None:
            options = DisableOptions()
        elif isinstance(options, dict):
            options = DisableOptions(**options)

        with self._project_lock():
            ws = self.store.read(workspace_id)
            if not ws.dispatch_enabled:
                return DisableResult(merged=False, message="Dispatch is not enabled")
            busy = self._busy_nodes(ws)
            if busy:
                raise DispatchInProgress(
                    f"Cannot disable dispatch: {len(busy)} node(s) still dispatched ({', '.join(busy)})",
                    nodes=busy,
                )

            config = ws.dispatch
            strategy = options.merge_strategy
            merged = False
            deleted: list[str] = []
            # a session switched away from git still owns its isolation branch
            if not config.process_branch:
                message = "Dispatch disabled (no VCS)"
                strategy = None
            elif self.vcs is None or not self.vcs.is_repository():
                message = "Repository is gone; dispatch configuration cleared without merging"
                strategy = None
            else:
                commit_message = options.commit_message or f"tasktree: dispatch results of {ws.name or workspace_id}"
                merged = self.vcs.merge(config.process_branch, config.original_branch, strategy, commit_message)
                message = _STRATEGY_MESSAGES[strategy].format(target=config.original_branch)
                if strategy != "skip" and not options.keep_process_branch:
                    if self.vcs.delete_branch(config.process_branch):
                        deleted.append(config.process_branch)
                if not options.keep_backup_branch:
                    for backup in config.backup_branches:
                        if self.vcs.delete_branch(backup):
                            deleted.append(backup)

            with self.store.transaction(workspace_id) as ws:
                ws.dispatch = None

        logger.info("Dispatch disabled for {}: {}", workspace_id, message)
        self._log(workspace_id, None, OPERATOR_SYSTEM, f"dispatch disabled: {message}")
        return DisableResult(merged=merged, message=message, strategy=strategy, deleted_branches=deleted)

    def switch_mode(self, workspace_id: str, use_vcs: bool) -> SwitchModeResult:
        """Change whether an enabled session isolates work on a git branch.

        Switching to git reuses the session's isolation branch when it still
        exists and opens a new one otherwise. Switching away leaves the
        branch in place so :meth:`disable` can still merge it.
        """
        with self._project_lock():
            ws = self._read_enabled(workspace_id)
            busy = self._busy_nodes(ws)
            if busy:
                raise DispatchInProgress(
                    f"Cannot switch dispatch mode: {len(busy)} node(s) still dispatched ({', '.join(busy)})",
                    nodes=busy,
                )
            previous = ws.dispatch.use_vcs
            if previous == use_vcs:
                return SwitchModeResult(use_vcs=use_vcs, previous=previous, changed=False, config=ws.dispatch)

            branches: Optional[tuple[str, str, list[str]]] = None
            if use_vcs:
                vcs = self._require_vcs()
                process_branch = ws.dispatch.process_branch
                if process_branch and vcs.branch_exists(process_branch):
                    vcs.prepare()
                    vcs.checkout(process_branch)
                else:
                    branches = self._open_isolation(vcs, workspace_id, _now_ms())

            with self.store.transaction(workspace_id) as ws:
                config = ws.dispatch
                config.use_vcs = use_vcs
                if branches is not None:
                    config.original_branch, config.process_branch, backups = branches
                    config.backup_branches.extend(backups)

        message = f"Dispatch mode switched from {_mode_label(previous)} to {_mode_label(use_vcs)}"
        logger.info("{} for {}", message, workspace_id)
        self._log(workspace_id, None, OPERATOR_SYSTEM, message)
        return SwitchModeResult(use_vcs=use_vcs, previous=previous, changed=True, config=config)

    def status(self, workspace_id: str) -> dict[str, Any]:
        ws = self.store.read(workspace_id)
        data: dict[str, Any] = {
            "enabled": ws.dispatch_enabled,
            "config": ws.dispatch.to_dict() if ws.dispatch else None,
            "active_nodes": [
                {"node_id": n.id, "status": n.dispatch.status.value, "start_marker": n.dispatch.start_marker}
                for n in ws.active_dispatch_nodes()
            ],
        }
        if ws.dispatch_enabled and ws.dispatch.use_vcs and self.vcs is not None and self.vcs.is_repository():
            config = ws.dispatch
            current = self.vcs.current_branch()
            data["vcs"] = {
                "current_branch": current,
                "has_uncommitted_changes": self.vcs.has_uncommitted_changes(),
                "on_isolation_branch": current == config.process_branch,
                "changed_files": self.vcs.changed_files(),
                "commits": self.vcs.commits_between(config.original_branch, config.process_branch),
            }
        return data
