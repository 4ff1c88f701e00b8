"""Provide small git helpers used by the dispatch engine."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import STATE_DIR_NAME
from .errors import VcsOperationFailed


def _run_git(project_dir: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess:
    command = ["git", *args]
    logger.debug("git {} (cwd={})", " ".join(args), project_dir)
    try:
        result = subprocess.run(
            command,
            cwd=project_dir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise VcsOperationFailed(f"Unable to run git: {exc}", command=" ".join(command)) from exc
    if check and result.returncode != 0:
        raise VcsOperationFailed(
            f"git {args[0]} failed: {(result.stderr or result.stdout).strip()}",
            command=" ".join(command),
            stderr=(result.stderr or "").strip(),
            returncode=result.returncode,
        )
    return result


def _ignore_file_has_entry(path: Path, ignore_entry: str) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return ignore_entry.strip().rstrip("/") in lines


def _git_exclude_path(project_dir: Path) -> Path:
    result = _run_git(project_dir, "rev-parse", "--git-path", "info/exclude")
    path = Path(result.stdout.strip())
    return path if path.is_absolute() else project_dir / path


def _ensure_state_dir_excluded(project_dir: Path) -> bool:
    """Keep the state directory out of git without touching tracked files.

    The entry goes to ``.git/info/exclude`` so adding it never makes the
    working tree dirty. Returns True if the file changed.
    """
    exclude_path = _git_exclude_path(project_dir)
    ignore_entry = f"{STATE_DIR_NAME}/"
    if _ignore_file_has_entry(exclude_path, ignore_entry):
        return False
    try:
        contents = exclude_path.read_text() if exclude_path.exists() else ""
        if contents and not contents.endswith("\n"):
            contents += "\n"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        exclude_path.write_text(contents + ignore_entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update {}: {}", exclude_path, exc)
        return False
    return True


def _git_is_repo(project_dir: Path) -> bool:
    try:
        result = _run_git(project_dir, "rev-parse", "--is-inside-work-tree", check=False)
    except VcsOperationFailed:
        return False
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--abbrev-ref", "HEAD", check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "HEAD", check=False)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, "show-ref", "--verify", f"refs/heads/{branch}", check=False)
    return result.returncode == 0


def _git_list_branches(project_dir: Path, pattern: Optional[str] = None) -> list[str]:
    args = ["branch", "--list", "--format=%(refname:short)"]
    if pattern:
        args.append(pattern)
    result = _run_git(project_dir, *args, check=False)
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_has_changes(project_dir: Path) -> bool:
    result = _run_git(project_dir, "status", "--porcelain", check=False)
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_changed_files(project_dir: Path, include_untracked: bool = True) -> list[str]:
    changed: set[str] = set()
    commands = [
        ["diff", "--name-only"],
        ["diff", "--name-only", "--staged"],
    ]
    if include_untracked:
        commands.append(["ls-files", "--others", "--exclude-standard"])
    for command in commands:
        result = _run_git(project_dir, *command, check=False)
        if result.returncode != 0:
            continue
        for line in result.stdout.splitlines():
            path = line.strip()
            if path and not path.startswith(f"{STATE_DIR_NAME}/"):
                changed.add(path)
    return sorted(changed)


def _git_conflicted_files(project_dir: Path) -> list[str]:
    result = _run_git(project_dir, "diff", "--name-only", "--diff-filter=U", check=False)
    return [f for f in result.stdout.strip().split("\n") if f]


def _git_commit(project_dir: Path, message: str) -> Optional[str]:
    """Stage everything and commit. Returns the new SHA, or None if nothing was staged."""
    _ensure_state_dir_excluded(project_dir)
    _run_git(project_dir, "add", "-A", "--", ".")
    staged = _run_git(project_dir, "diff", "--cached", "--quiet", check=False)
    if staged.returncode == 0:
        return None
    _run_git(project_dir, "commit", "-m", message)
    return _git_head_sha(project_dir)
