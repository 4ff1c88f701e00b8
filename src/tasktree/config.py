"""Load optional project configuration from `.tasktree/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_DISPATCH_MAX_RETRIES,
    DEFAULT_DISPATCH_MODE,
    DEFAULT_DISPATCH_TIMEOUT_MS,
    DEFAULT_MAX_LOG_ENTRIES,
    STATE_DIR_NAME,
)
from .io_utils import _load_yaml_with_error


# Valid dispatch modes that can be specified in config
VALID_DISPATCH_MODES = {"none", "git"}


def load_project_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional project config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_yaml_with_error(path)
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def get_dispatch_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the dispatch block with defaults filled in.

    Args:
        config: Project configuration dictionary.

    Returns:
        A mapping with `default_mode`, `timeout_ms` and `max_retries`.
    """
    raw = _get_nested(config, "dispatch")
    raw = raw if isinstance(raw, dict) else {}
    mode = raw.get("default_mode")
    return {
        "default_mode": mode if mode in VALID_DISPATCH_MODES else DEFAULT_DISPATCH_MODE,
        "timeout_ms": _positive_int(raw.get("timeout_ms"), DEFAULT_DISPATCH_TIMEOUT_MS),
        "max_retries": _positive_int(raw.get("max_retries"), DEFAULT_DISPATCH_MAX_RETRIES),
    }


def get_context_max_log_entries(config: dict[str, Any]) -> int:
    raw = _get_nested(config, "context", "max_log_entries")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_MAX_LOG_ENTRIES
    return value if value >= 0 else DEFAULT_MAX_LOG_ENTRIES


def get_branch_prefix(config: dict[str, Any]) -> str:
    raw = _get_nested(config, "vcs", "branch_prefix")
    if isinstance(raw, str) and raw.strip().strip("/"):
        return raw.strip().strip("/")
    return DEFAULT_BRANCH_PREFIX
