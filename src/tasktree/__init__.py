"""Provide the public `tasktree` package exports."""

from __future__ import annotations

from .container import TaskTree
from .context import ContextOptions, ContextView, build_context
from .dispatch import DisableOptions, DispatchEngine
from .engine import NodeEngine, TransitionResult
from .errors import TaskTreeError
from .vcs import GitAdapter, VcsAdapter

__all__ = [
    "ContextOptions",
    "ContextView",
    "DisableOptions",
    "DispatchEngine",
    "GitAdapter",
    "NodeEngine",
    "TaskTree",
    "TaskTreeError",
    "TransitionResult",
    "VcsAdapter",
    "build_context",
]
