from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from . import __version__
from .controller.ops import handle_op
from .kernel.session_lock import SessionLock
from .paths import default_paths
from .supervisor import process


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _op(op: str, args: Optional[Dict[str, Any]] = None) -> int:
    resp = handle_op(op, args or {}, paths=default_paths())
    _print_json(resp.model_dump())
    return 0 if resp.ok else 1


def _component_cmd(name: str, action: str) -> int:
    paths = default_paths()
    if action == "run":
        if name == "controller":
            from .controller.loop import run_controller

            return run_controller(paths)
        from .ports.im.bridge import start_bridge

        return start_bridge(paths)

    if action == "status":
        alive, pid = process.component_alive(paths, name)
        print(f"{name}: running pid={pid}" if alive else f"{name}: not running")
        return 0 if alive else 1

    if action == "start":
        alive, pid = process.component_alive(paths, name)
        if alive:
            print(f"{name}: already running pid={pid}")
            return 0
        pid = process.spawn(paths, process.component(name))
        print(f"{name}: started pid={pid}")
        return 0

    if action == "stop":
        pid = process.stop(paths, name)
        print(f"{name}: stopped pid={pid}" if pid else f"{name}: not running")
        return 0

    return 2


def cmd_controller(args: argparse.Namespace) -> int:
    return _component_cmd("controller", args.action)


def cmd_bridge(args: argparse.Namespace) -> int:
    return _component_cmd("bridge", args.action)


def cmd_up(args: argparse.Namespace) -> int:
    rc = 0
    for name in process.COMPONENTS:
        rc = max(rc, _component_cmd(name, "start"))
    return rc


def cmd_down(args: argparse.Namespace) -> int:
    for name in process.COMPONENTS:
        _component_cmd(name, "stop")
    return 0


def cmd_watchdog(args: argparse.Namespace) -> int:
    from .supervisor.watchdog import Watchdog, run_watchdog

    paths = default_paths()
    if args.action == "run":
        return run_watchdog(paths)
    dog = Watchdog(paths)
    if args.action == "tick":
        _print_json(dog.tick())
        return 0
    return _op("watchdog_status")


def cmd_status(args: argparse.Namespace) -> int:
    return _op("status")


def cmd_send(args: argparse.Namespace) -> int:
    return _op("send", {"text": " ".join(args.text)})


def cmd_plan(args: argparse.Namespace) -> int:
    a = args.action
    if a == "start":
        return _op("plan_start", {"request": " ".join(args.request)})
    if a == "approve":
        return _op("plan_approve", {"mode": args.mode})
    if a == "override":
        return _op("plan_override", {"task_id": args.task_id, "platform": args.platform, "model": args.model})
    if a == "default":
        return _op("plan_default", {"platform": args.platform, "model": args.model})
    return _op(f"plan_{a}")


def cmd_task(args: argparse.Namespace) -> int:
    return _op(f"task_{args.action}", {"task_id": args.task_id})


def cmd_lock(args: argparse.Namespace) -> int:
    if args.action == "clear":
        return _op("clear_lock")
    lock = SessionLock(default_paths())
    holder = lock.holder()
    _print_json({
        "held": lock.is_held(),
        "holder": holder.model_dump() if holder else None,
        "age_seconds": lock.age_seconds(),
    })
    return 0


def cmd_kill(args: argparse.Namespace) -> int:
    return _op("kill")


def cmd_restart(args: argparse.Namespace) -> int:
    return _op("restart")


def cmd_project(args: argparse.Namespace) -> int:
    if args.action == "add":
        return _op("project_add", {"name": args.name, "path": args.path})
    if args.action == "use":
        return _op("project_use", {"name": args.name})
    return _op("project_list")


def cmd_backend(args: argparse.Namespace) -> int:
    return _op("backend", {"backend": args.backend})


def cmd_model(args: argparse.Namespace) -> int:
    return _op("model", {"model": args.model})


def cmd_diagnose(args: argparse.Namespace) -> int:
    return _op("diagnose", {"component": args.component})


def cmd_autofix(args: argparse.Namespace) -> int:
    return _op("autofix", {"enabled": args.state})


def cmd_fix(args: argparse.Namespace) -> int:
    return _op(f"{args.action}_fix")


def cmd_version(args: argparse.Namespace) -> int:
    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="agentrelay", description="Chat-driven relay for local coding agents")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name, func in (("controller", cmd_controller), ("bridge", cmd_bridge)):
        p_comp = sub.add_parser(name, help=f"Manage the {name} process")
        p_comp.add_argument("action", choices=["run", "start", "stop", "status"], help="run in foreground, or manage")
        p_comp.set_defaults(func=func)

    p_up = sub.add_parser("up", help="Start controller and bridge in the background")
    p_up.set_defaults(func=cmd_up)

    p_down = sub.add_parser("down", help="Stop controller and bridge")
    p_down.set_defaults(func=cmd_down)

    p_wd = sub.add_parser("watchdog", help="Out-of-band watchdog")
    p_wd.add_argument("action", choices=["tick", "run", "status"], help="one tick (cron), loop, or status")
    p_wd.set_defaults(func=cmd_watchdog)

    p_status = sub.add_parser("status", help="Show plan, dispatch, lock and process status")
    p_status.set_defaults(func=cmd_status)

    p_send = sub.add_parser("send", help="Queue a message for the agent")
    p_send.add_argument("text", nargs="+", help="Message text")
    p_send.set_defaults(func=cmd_send)

    p_plan = sub.add_parser("plan", help="Plan approval workflow")
    plan_sub = p_plan.add_subparsers(dest="action", required=True)
    p_plan_start = plan_sub.add_parser("start", help="Start planning for the active project")
    p_plan_start.add_argument("request", nargs="+", help="What to build")
    plan_sub.add_parser("show", help="Show the current plan")
    plan_sub.add_parser("review", help="Route tasks and move to confirmation")
    p_plan_approve = plan_sub.add_parser("approve", help="Freeze the plan into a dispatch")
    p_plan_approve.add_argument("--mode", choices=["step", "auto"], default="step", help="Pacing (default: step)")
    p_plan_override = plan_sub.add_parser("override", help="Route one task")
    p_plan_override.add_argument("task_id")
    p_plan_override.add_argument("platform")
    p_plan_override.add_argument("model", nargs="?", default="")
    p_plan_default = plan_sub.add_parser("default", help="Route every task not overridden")
    p_plan_default.add_argument("platform")
    p_plan_default.add_argument("model", nargs="?", default="")
    plan_sub.add_parser("replan", help="Discard the plan and draft again")
    plan_sub.add_parser("stop", help="Stop the dispatch before its next task")
    plan_sub.add_parser("continue", help="Release the next step (step mode)")
    p_plan.set_defaults(func=cmd_plan)

    p_task = sub.add_parser("task", help="Recover a failed dispatch task")
    p_task.add_argument("action", choices=["retry", "resolve"], help="error -> pending, or error -> done")
    p_task.add_argument("task_id")
    p_task.set_defaults(func=cmd_task)

    p_lock = sub.add_parser("lock", help="Inspect or clear the session lock")
    p_lock.add_argument("action", choices=["show", "clear"])
    p_lock.set_defaults(func=cmd_lock)

    p_kill = sub.add_parser("kill", help="Force-stop running agents and release the lock")
    p_kill.set_defaults(func=cmd_kill)

    p_restart = sub.add_parser("restart", help="Restart the controller")
    p_restart.set_defaults(func=cmd_restart)

    p_project = sub.add_parser("project", help="Projects registry")
    project_sub = p_project.add_subparsers(dest="action", required=True)
    p_project_add = project_sub.add_parser("add", help="Register a project directory")
    p_project_add.add_argument("name")
    p_project_add.add_argument("path")
    p_project_use = project_sub.add_parser("use", help="Switch the active project")
    p_project_use.add_argument("name")
    project_sub.add_parser("list", help="List projects")
    p_project.set_defaults(func=cmd_project)

    p_backend = sub.add_parser("backend", help="Show or set the agent backend")
    p_backend.add_argument("backend", nargs="?", default="")
    p_backend.set_defaults(func=cmd_backend)

    p_model = sub.add_parser("model", help="Show or set the chat model")
    p_model.add_argument("model", nargs="?", default="")
    p_model.set_defaults(func=cmd_model)

    p_diag = sub.add_parser("diagnose", help="Queue a diagnosis for the watchdog")
    p_diag.add_argument("component", nargs="?", default="controller", choices=list(process.COMPONENTS))
    p_diag.set_defaults(func=cmd_diagnose)

    p_autofix = sub.add_parser("autofix", help="Toggle guarded auto-fix")
    p_autofix.add_argument("state", nargs="?", default=None, choices=["on", "off"])
    p_autofix.set_defaults(func=cmd_autofix)

    p_fix = sub.add_parser("fix", help="Decide on a parked fix branch")
    p_fix.add_argument("action", choices=["apply", "discard"])
    p_fix.set_defaults(func=cmd_fix)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
