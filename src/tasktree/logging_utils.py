"""Configure logging and summarize transition and dispatch results."""

import json
import sys
from typing import Any

from loguru import logger


def configure_logging(level: str = "WARNING") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan> "
            "{message}"
        ),
    )


def _clip(text: Any, limit: int = 240) -> Any:
    if not isinstance(text, str):
        return text
    return (text[:limit] + "…") if len(text) > limit else text


def summarize_transition(result: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a transition result.

    Args:
        result: A ``TransitionResult`` (or None).

    Returns:
        A dictionary with the node, the status change and cascade count.
    """
    if result is None:
        return {"transition": None}
    d: dict[str, Any] = {
        "node_id": getattr(result, "node_id", None),
        "action": getattr(result, "action", None),
        "from": getattr(result, "previous_status", None),
        "to": getattr(result, "current_status", None),
    }
    conclusion = getattr(result, "conclusion", None)
    if conclusion:
        d["conclusion"] = _clip(conclusion)
    cascade = getattr(result, "cascade_updates", None) or []
    d["cascade_n"] = len(cascade)
    if cascade:
        d["cascade"] = [str(change) for change in cascade]
    action_required = getattr(result, "action_required", None)
    if action_required:
        d["action_required"] = action_required.get("type")
    return d


def summarize_dispatch(result: Any) -> dict[str, Any]:
    """Render a compact summary of any dispatch engine result."""
    if result is None:
        return {"dispatch": None}

    name = result.__class__.__name__
    d: dict[str, Any] = {"result": name}

    if name == "EnableResult":
        config = result.config
        d["use_vcs"] = config.use_vcs
        if config.use_vcs:
            d["original_branch"] = config.original_branch
            d["process_branch"] = config.process_branch
            d["backup_n"] = len(config.backup_branches)
        if result.stale_branches:
            d["stale_n"] = len(result.stale_branches)

    elif name == "PrepareResult":
        d["node_id"] = result.work_unit.node_id
        d["start_marker"] = result.start_marker
        d["timeout_ms"] = result.work_unit.timeout_ms

    elif name == "CompleteResult":
        d["node_id"] = result.node_id
        d["success"] = result.success
        d["end_marker"] = result.end_marker
        d["next_status"] = result.next_status
        d["dispatch_status"] = result.dispatch_status
        if result.verifier_id:
            d["verifier_id"] = result.verifier_id
        if result.rolled_back:
            d["rolled_back"] = True

    elif name == "DisableResult":
        d["merged"] = result.merged
        d["strategy"] = result.strategy
        d["message"] = _clip(result.message)
        d["deleted_n"] = len(result.deleted_branches)

    elif name == "SwitchModeResult":
        d["use_vcs"] = result.use_vcs
        d["changed"] = result.changed

    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable output.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(obj)
