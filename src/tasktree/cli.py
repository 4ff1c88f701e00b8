from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.tree import Tree

from .constants import OPERATOR_HUMAN
from .container import TaskTree
from .errors import TaskTreeError
from .logging_utils import configure_logging

_STATUS_STYLES = {
    "pending": "dim",
    "planning": "cyan",
    "monitoring": "blue",
    "implementing": "yellow",
    "validating": "magenta",
    "completed": "green",
    "failed": "red",
    "cancelled": "strike dim",
}


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> TaskTree:
    return TaskTree(_resolve_project_dir(args.project_dir))


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2, default=str, ensure_ascii=False) + "\n")
    return 0


# -- workspaces -------------------------------------------------------------

def _workspace_create(args: argparse.Namespace) -> int:
    ws = _ctx(args).create_workspace(args.name, goal=args.goal, rules=args.rule)
    return _emit({"workspace_id": ws.id, "root_node_id": ws.root_node_id})


def _workspace_list(args: argparse.Namespace) -> int:
    return _emit({"workspaces": _ctx(args).list_workspaces()})


def _workspace_delete(args: argparse.Namespace) -> int:
    return _emit({"deleted": _ctx(args).delete_workspace(args.workspace_id)})


# -- nodes ------------------------------------------------------------------

def _node_create(args: argparse.Namespace) -> int:
    result = _ctx(args).nodes.create_node(
        args.workspace_id,
        args.parent_id,
        args.type,
        args.title,
        requirement=args.requirement,
        note=args.note,
        verifies=args.verifies,
        isolate=args.isolate,
    )
    return _emit(
        {
            "node": result["node"].to_dict(),
            "cascade_updates": [c.to_dict() for c in result["cascade_updates"]],
        }
    )


def _node_show(args: argparse.Namespace) -> int:
    return _emit({"node": _ctx(args).nodes.get_node(args.workspace_id, args.node_id).to_dict()})


def _node_update(args: argparse.Namespace) -> int:
    node = _ctx(args).nodes.update_node(
        args.workspace_id,
        args.node_id,
        title=args.title,
        requirement=args.requirement,
        note=args.note,
    )
    return _emit({"node": node.to_dict()})


def _node_delete(args: argparse.Namespace) -> int:
    return _emit({"deleted": _ctx(args).nodes.delete_node(args.workspace_id, args.node_id)})


def _node_isolate(args: argparse.Namespace) -> int:
    node = _ctx(args).nodes.set_isolate(args.workspace_id, args.node_id, args.state == "on")
    return _emit({"node_id": node.id, "isolate": node.isolate})


def _transition(args: argparse.Namespace) -> int:
    result = _ctx(args).transition(
        args.workspace_id,
        args.node_id,
        args.action,
        conclusion=args.conclusion,
        reason=args.reason,
    )
    return _emit(result.to_dict())


def _context(args: argparse.Namespace) -> int:
    options: dict[str, Any] = {
        "include_log": not args.no_log,
        "reverse_log": args.reverse_log,
        "include_problem": not args.no_problem,
    }
    if args.max_log_entries is not None:
        options["max_log_entries"] = args.max_log_entries
    view = _ctx(args).get_context(args.workspace_id, args.node_id, options)
    return _emit(view.to_dict())


def _log(args: argparse.Namespace) -> int:
    entry = _ctx(args).nodes.append_log(args.workspace_id, args.node, args.event, operator=args.operator)
    return _emit(entry.to_dict())


def _problem(args: argparse.Namespace) -> int:
    engine = _ctx(args).nodes
    if args.clear:
        node = engine.clear_problem(args.workspace_id, args.node_id)
    else:
        node = engine.update_problem(args.workspace_id, args.node_id, args.text or "", next_step=args.next_step)
    return _emit({"node_id": node.id, "problem": node.problem, "next_step": node.next_step})


def _reference(args: argparse.Namespace) -> int:
    refs = _ctx(args).nodes.reference(
        args.workspace_id,
        args.node_id,
        args.target,
        args.action,
        description=args.description,
        kind="doc" if args.doc else "node",
    )
    return _emit({"references": [r.to_dict() for r in refs]})


def _focus(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).nodes.focus(args.workspace_id, args.node_id))


def _add_branch(parent: Tree, entry: dict[str, Any]) -> None:
    style = _STATUS_STYLES.get(entry["status"], "")
    label = f"[{style}]{entry['status']}[/] [bold]{entry['title']}[/] [dim]{entry['id']} ({entry['type']})[/]"
    if entry.get("isolate"):
        label += " [yellow]isolated[/]"
    if entry.get("dispatch"):
        label += f" [magenta]dispatch:{entry['dispatch']}[/]"
    if entry.get("focus"):
        label += " [reverse] focus [/]"
    branch = parent.add(label)
    for child in entry.get("children", []):
        _add_branch(branch, child)


def _tree(args: argparse.Namespace) -> int:
    data = _ctx(args).nodes.list_tree(args.workspace_id)
    if args.json:
        return _emit(data)
    root = Tree(f"[bold]{args.workspace_id}[/]")
    if data:
        _add_branch(root, data)
    Console().print(root)
    return 0


# -- dispatch ---------------------------------------------------------------

def _dispatch_enable(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).dispatch_enable(args.workspace_id, use_vcs=args.use_vcs).to_dict())


def _dispatch_prepare(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).dispatch_prepare(args.workspace_id, args.node_id).to_dict())


def _dispatch_complete(args: argparse.Namespace) -> int:
    result = _ctx(args).dispatch_complete(args.workspace_id, args.node_id, args.success, args.conclusion)
    return _emit(result.to_dict())


def _dispatch_verify(args: argparse.Namespace) -> int:
    result = _ctx(args).dispatch_verify(args.workspace_id, args.node_id, args.passed, args.conclusion)
    return _emit(result.to_dict())


def _dispatch_disable(args: argparse.Namespace) -> int:
    options = {
        "merge_strategy": args.strategy,
        "keep_backup_branch": args.keep_backup,
        "keep_process_branch": args.keep_process,
        "commit_message": args.message,
    }
    return _emit(_ctx(args).dispatch_disable(args.workspace_id, options).to_dict())


def _dispatch_mode(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).dispatch_switch_mode(args.workspace_id, args.use_vcs).to_dict())


def _dispatch_status(args: argparse.Namespace) -> int:
    return _emit(_ctx(args).dispatch_status(args.workspace_id))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tasktree", description="Task tree orchestration core")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug output to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    workspace = subparsers.add_parser("workspace", help="Manage workspaces")
    ws_sub = workspace.add_subparsers(dest="workspace_cmd", required=True)
    wcreate = ws_sub.add_parser("create", help="Create a workspace")
    wcreate.add_argument("name")
    wcreate.add_argument("--goal", default="")
    wcreate.add_argument("--rule", action="append", default=[])
    wcreate.set_defaults(func=_workspace_create)
    wlist = ws_sub.add_parser("list", help="List workspaces")
    wlist.set_defaults(func=_workspace_list)
    wdelete = ws_sub.add_parser("delete", help="Delete a workspace")
    wdelete.add_argument("workspace_id")
    wdelete.set_defaults(func=_workspace_delete)

    node = subparsers.add_parser("node", help="Manage nodes")
    node_sub = node.add_subparsers(dest="node_cmd", required=True)
    ncreate = node_sub.add_parser("create", help="Create a node")
    ncreate.add_argument("workspace_id")
    ncreate.add_argument("parent_id")
    ncreate.add_argument("type", choices=["planning", "execution"])
    ncreate.add_argument("title")
    ncreate.add_argument("--requirement", default="")
    ncreate.add_argument("--note", default="")
    ncreate.add_argument("--verifies", default=None)
    ncreate.add_argument("--isolate", action="store_true")
    ncreate.set_defaults(func=_node_create)
    nshow = node_sub.add_parser("show", help="Show a node record")
    nshow.add_argument("workspace_id")
    nshow.add_argument("node_id")
    nshow.set_defaults(func=_node_show)
    nupdate = node_sub.add_parser("update", help="Edit node text")
    nupdate.add_argument("workspace_id")
    nupdate.add_argument("node_id")
    nupdate.add_argument("--title", default=None)
    nupdate.add_argument("--requirement", default=None)
    nupdate.add_argument("--note", default=None)
    nupdate.set_defaults(func=_node_update)
    ndelete = node_sub.add_parser("delete", help="Delete a node and its subtree")
    ndelete.add_argument("workspace_id")
    ndelete.add_argument("node_id")
    ndelete.set_defaults(func=_node_delete)
    nisolate = node_sub.add_parser("isolate", help="Set the isolation flag")
    nisolate.add_argument("workspace_id")
    nisolate.add_argument("node_id")
    nisolate.add_argument("state", choices=["on", "off"])
    nisolate.set_defaults(func=_node_isolate)

    transition = subparsers.add_parser("transition", help="Apply a lifecycle action to a node")
    transition.add_argument("workspace_id")
    transition.add_argument("node_id")
    transition.add_argument("action", choices=["start", "submit", "complete", "fail", "retry", "reopen", "cancel"])
    transition.add_argument("--conclusion", default=None)
    transition.add_argument("--reason", default=None)
    transition.set_defaults(func=_transition)

    context = subparsers.add_parser("context", help="Show the aggregated context of a node")
    context.add_argument("workspace_id")
    context.add_argument("node_id")
    context.add_argument("--no-log", action="store_true")
    context.add_argument("--max-log-entries", type=int, default=None)
    context.add_argument("--reverse-log", action="store_true")
    context.add_argument("--no-problem", action="store_true")
    context.set_defaults(func=_context)

    log = subparsers.add_parser("log", help="Append an activity log entry")
    log.add_argument("workspace_id")
    log.add_argument("event")
    log.add_argument("--node", default=None, help="Node ID (default: workspace log)")
    log.add_argument("--operator", default=OPERATOR_HUMAN)
    log.set_defaults(func=_log)

    problem = subparsers.add_parser("problem", help="Record or clear a node's current problem")
    problem.add_argument("workspace_id")
    problem.add_argument("node_id")
    problem.add_argument("text", nargs="?", default=None)
    problem.add_argument("--next-step", default=None)
    problem.add_argument("--clear", action="store_true")
    problem.set_defaults(func=_problem)

    reference = subparsers.add_parser("reference", help="Manage node or document references")
    reference.add_argument("workspace_id")
    reference.add_argument("node_id")
    reference.add_argument("target")
    reference.add_argument("action", choices=["add", "remove", "expire", "activate"])
    reference.add_argument("--description", default="")
    reference.add_argument("--doc", action="store_true", help="Target is a document path")
    reference.set_defaults(func=_reference)

    focus = subparsers.add_parser("focus", help="Set the workspace focus")
    focus.add_argument("workspace_id")
    focus.add_argument("node_id")
    focus.set_defaults(func=_focus)

    tree = subparsers.add_parser("tree", help="Render the node tree")
    tree.add_argument("workspace_id")
    tree.add_argument("--json", action="store_true")
    tree.set_defaults(func=_tree)

    dispatch = subparsers.add_parser("dispatch", help="Dispatch mode")
    d_sub = dispatch.add_subparsers(dest="dispatch_cmd", required=True)
    denable = d_sub.add_parser("enable", help="Enable dispatch mode")
    denable.add_argument("workspace_id")
    mode = denable.add_mutually_exclusive_group()
    mode.add_argument("--git", dest="use_vcs", action="store_true", default=None)
    mode.add_argument("--no-git", dest="use_vcs", action="store_false")
    denable.set_defaults(func=_dispatch_enable)
    dprepare = d_sub.add_parser("prepare", help="Prepare a node for dispatch")
    dprepare.add_argument("workspace_id")
    dprepare.add_argument("node_id")
    dprepare.set_defaults(func=_dispatch_prepare)
    dcomplete = d_sub.add_parser("complete", help="Report the outcome of a dispatched node")
    dcomplete.add_argument("workspace_id")
    dcomplete.add_argument("node_id")
    outcome = dcomplete.add_mutually_exclusive_group(required=True)
    outcome.add_argument("--success", dest="success", action="store_true")
    outcome.add_argument("--failure", dest="success", action="store_false")
    dcomplete.add_argument("--conclusion", required=True)
    dcomplete.set_defaults(func=_dispatch_complete)
    dverify = d_sub.add_parser("verify", help="Report a verification result")
    dverify.add_argument("workspace_id")
    dverify.add_argument("node_id")
    verdict = dverify.add_mutually_exclusive_group(required=True)
    verdict.add_argument("--passed", dest="passed", action="store_true")
    verdict.add_argument("--failed", dest="passed", action="store_false")
    dverify.add_argument("--conclusion", default=None)
    dverify.set_defaults(func=_dispatch_verify)
    ddisable = d_sub.add_parser("disable", help="Disable dispatch mode and merge")
    ddisable.add_argument("workspace_id")
    ddisable.add_argument("--strategy", default="sequential", choices=["sequential", "squash", "cherry-pick", "skip"])
    ddisable.add_argument("--keep-backup", action="store_true")
    ddisable.add_argument("--keep-process", action="store_true")
    ddisable.add_argument("--message", default=None)
    ddisable.set_defaults(func=_dispatch_disable)
    dmode = d_sub.add_parser("mode", help="Switch an enabled session between git and no-VCS mode")
    dmode.add_argument("workspace_id")
    target = dmode.add_mutually_exclusive_group(required=True)
    target.add_argument("--git", dest="use_vcs", action="store_true")
    target.add_argument("--no-git", dest="use_vcs", action="store_false")
    dmode.set_defaults(func=_dispatch_mode)
    dstatus = d_sub.add_parser("status", help="Show dispatch status")
    dstatus.add_argument("workspace_id")
    dstatus.set_defaults(func=_dispatch_status)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "WARNING")
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except TaskTreeError as exc:
        sys.stderr.write(json.dumps({"error": exc.to_dict()}, default=str, ensure_ascii=False) + "\n")
        return 1
    except ValidationError as exc:
        sys.stderr.write(json.dumps({"error": {"code": "INVALID_PARAMS", "message": str(exc)}}) + "\n")
        return 2
