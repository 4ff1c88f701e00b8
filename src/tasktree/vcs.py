"""Version-control adapter used by the dispatch engine.

The dispatch engine only talks to :class:`VcsAdapter`. :class:`GitAdapter`
implements it by shelling out to ``git`` in the project directory; tests can
substitute an in-memory fake.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import MERGE_STRATEGIES
from .errors import InvalidParams, MergeConflict, VcsOperationFailed
from .git_utils import (
    _ensure_state_dir_excluded,
    _git_branch_exists,
    _git_changed_files,
    _git_commit,
    _git_conflicted_files,
    _git_current_branch,
    _git_has_changes,
    _git_head_sha,
    _git_is_repo,
    _git_list_branches,
    _run_git,
)


class VcsAdapter(ABC):
    """Narrow branch/commit/reset/merge interface."""

    @abstractmethod
    def is_repository(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def current_branch(self) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def head(self) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def branch_exists(self, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_branches(self, pattern: Optional[str] = None) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def create_isolation_branch(self, name: str) -> None:
        """Create *name* at the current HEAD and switch to it."""
        raise NotImplementedError

    @abstractmethod
    def checkout(self, name: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def commit(self, message: str) -> Optional[str]:
        """Commit every change in the working tree; None when there was nothing to commit."""
        raise NotImplementedError

    @abstractmethod
    def hard_reset(self, marker: str) -> None:
        """Restore tracked files to *marker* and drop untracked files."""
        raise NotImplementedError

    @abstractmethod
    def merge(self, source: str, target: str, strategy: str, message: Optional[str] = None) -> bool:
        """Bring *source* into *target* and leave *target* checked out.

        Returns True when changes were merged (False for ``skip``). Raises
        :class:`MergeConflict` after aborting a conflicting merge.
        """
        raise NotImplementedError

    @abstractmethod
    def has_uncommitted_changes(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def changed_files(self) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def commits_between(self, base: str, head: str) -> list[dict[str, str]]:
        raise NotImplementedError

    @abstractmethod
    def delete_branch(self, name: str) -> bool:
        raise NotImplementedError

    def prepare(self) -> None:
        """Hook run before a dispatch session touches the repository."""


class GitAdapter(VcsAdapter):
    def __init__(self, project_dir: Path) -> None:
        self.project_dir = Path(project_dir).resolve()

    def _git(self, *args: str, check: bool = True):
        return _run_git(self.project_dir, *args, check=check)

    def prepare(self) -> None:
        _ensure_state_dir_excluded(self.project_dir)

    def is_repository(self) -> bool:
        return _git_is_repo(self.project_dir)

    def current_branch(self) -> Optional[str]:
        return _git_current_branch(self.project_dir)

    def head(self) -> Optional[str]:
        return _git_head_sha(self.project_dir)

    def branch_exists(self, name: str) -> bool:
        return _git_branch_exists(self.project_dir, name)

    def list_branches(self, pattern: Optional[str] = None) -> list[str]:
        return _git_list_branches(self.project_dir, pattern)

    def create_isolation_branch(self, name: str) -> None:
        self._git("checkout", "-b", name)

    def checkout(self, name: str) -> None:
        if self.current_branch() == name:
            return
        self._git("checkout", name)

    def commit(self, message: str) -> Optional[str]:
        return _git_commit(self.project_dir, message)

    def hard_reset(self, marker: str) -> None:
        logger.info("Rolling back {} to {}", self.project_dir, marker[:12])
        self._git("reset", "--hard", marker)
        self._git("clean", "-fd")

    def has_uncommitted_changes(self) -> bool:
        return _git_has_changes(self.project_dir)

    def changed_files(self) -> list[str]:
        return _git_changed_files(self.project_dir)

    def commits_between(self, base: str, head: str) -> list[dict[str, str]]:
        result = self._git("log", "--reverse", "--format=%H%x09%s", f"{base}..{head}", check=False)
        if result.returncode != 0:
            return []
        commits: list[dict[str, str]] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            sha, _, subject = line.partition("\t")
            commits.append({"hash": sha, "message": subject})
        return commits

    def delete_branch(self, name: str) -> bool:
        result = self._git("branch", "-D", name, check=False)
        if result.returncode != 0:
            logger.warning("Could not delete branch {}: {}", name, result.stderr.strip())
            return False
        return True

    # -- merging ------------------------------------------------------------

    def _abort(self, *args: str) -> None:
        result = self._git(*args, check=False)
        if result.returncode != 0:
            self._git("reset", "--merge", check=False)

    def _conflict(self, strategy: str, source: str, target: str, exc: VcsOperationFailed) -> MergeConflict:
        files = _git_conflicted_files(self.project_dir)
        return MergeConflict(
            f"{strategy} merge of {source} into {target} conflicts in {len(files)} file(s)",
            files=files,
            source=source,
            target=target,
            strategy=strategy,
            stderr=exc.details.get("stderr", ""),
        )

    def merge(self, source: str, target: str, strategy: str, message: Optional[str] = None) -> bool:
        if strategy not in MERGE_STRATEGIES:
            raise InvalidParams(f"Unknown merge strategy '{strategy}'", strategy=strategy)

        if strategy == "skip":
            self.checkout(target)
            return False

        if strategy == "sequential":
            self.checkout(source)
            try:
                self._git("rebase", target)
            except VcsOperationFailed as exc:
                conflict = self._conflict(strategy, source, target, exc)
                self._abort("rebase", "--abort")
                raise conflict from exc
            self.checkout(target)
            self._git("merge", "--ff-only", source)
            return True

        self.checkout(target)
        if strategy == "squash":
            try:
                self._git("merge", "--squash", source)
            except VcsOperationFailed as exc:
                conflict = self._conflict(strategy, source, target, exc)
                self._abort("reset", "--merge")
                raise conflict from exc
            return bool(_git_commit(self.project_dir, message or f"Merge {source}"))

        # cherry-pick: apply the source commits to the working tree without committing
        base = self._git("merge-base", target, source).stdout.strip()
        if base == self._git("rev-parse", source).stdout.strip():
            return False
        try:
            self._git("cherry-pick", "-n", f"{base}..{source}")
        except VcsOperationFailed as exc:
            conflict = self._conflict(strategy, source, target, exc)
            self._abort("cherry-pick", "--abort")
            raise conflict from exc
        return True

