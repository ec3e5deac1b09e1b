"""Operator operations shared by the chat bridge and the CLI.

Every handler takes `(paths, args)` and returns an `OpResult`; domain errors
never cross this boundary as exceptions. `result["text"]` is the line the
bridge shows in chat.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .. import __version__
from ..contracts.v1 import OpError, OpResult, text_payload
from ..kernel import plan as plans
from ..kernel.dispatch import consume_continue, edit_dispatch, load_dispatch, request_continue
from ..kernel.errors import RelayError
from ..kernel.mailbox import Mailbox
from ..kernel.routing import platform_table
from ..kernel.session_lock import SessionLock
from ..kernel.settings import load_config
from ..kernel.state import add_project, edit_state, load_state, use_project
from ..kernel.tokens import validate_model_id, validate_platform
from ..kernel.watchdog_state import edit_watchdog_state
from ..paths import RelayPaths, default_paths
from ..runners.agent import AgentRunner
from ..supervisor import process
from ..supervisor.watchdog import Watchdog
from ..util.conv import coerce_bool

logger = logging.getLogger("agentrelay.ops")

Handler = Callable[[RelayPaths, Dict[str, Any]], OpResult]


def _error(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> OpResult:
    return OpResult(ok=False, error=OpError(code=code, message=message, details=(details or {})))


def _ok(text: str, **result: Any) -> OpResult:
    return OpResult(ok=True, result={"text": text, **result})


def _task_id(args: Dict[str, Any]) -> Optional[int]:
    raw = str(args.get("task_id") or "").strip().lstrip("#")
    return int(raw) if raw.isdigit() else None


def _table(paths: RelayPaths):
    return platform_table(load_config(paths).platforms)


# Plan


def handle_plan_start(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    request = str(args.get("request") or "").strip()
    if not request:
        return _error("missing_request", "usage: /plan <what to build>")
    plan = plans.start_planning(paths, request)
    return _ok(f"📝 Planning started for {plan.project_path}. Plan mode is on: only documents may change.",
               plan=plan.model_dump(mode="json"))


def handle_plan_show(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    plan = plans.current_plan(paths)
    return _ok(plans.format_plan(plan), plan=plan.model_dump(mode="json"))


def handle_plan_review(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    plan = plans.review(paths, _table(paths))
    return _ok(plans.format_plan(plan, header="📋 Plan for confirmation"), plan=plan.model_dump(mode="json"))


def handle_plan_approve(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    mode = str(args.get("mode") or "step").strip().lower()
    if mode not in ("step", "auto"):
        return _error("invalid_mode", f"mode must be step or auto, not {mode!r}")
    if not plans.current_plan(paths).tasks:
        return _error("empty_plan", "the plan has no tasks")
    d = plans.approve(paths, mode)  # type: ignore[arg-type]
    return _ok(f"🚀 Dispatch {d.id} approved ({mode}, {len(d.tasks)} tasks) in {d.project_path}.",
               dispatch=d.model_dump(mode="json"))


def handle_plan_override(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    tid = _task_id(args)
    platform = str(args.get("platform") or "").strip().lower()
    if tid is None or not platform:
        return _error("missing_args", "usage: /override <task> <platform> [model]")
    try:
        plan = plans.override_task(paths, tid, platform, str(args.get("model") or "").strip(), _table(paths))
    except KeyError:
        return _error("task_not_found", f"no task {tid} in the plan")
    t = plan.task(tid)
    return _ok(f"🔀 Task {tid} -> {t.platform}/{t.model}" if t else "ok", plan=plan.model_dump(mode="json"))


def handle_plan_default(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    platform = str(args.get("platform") or "").strip().lower()
    if not platform:
        return _error("missing_args", "usage: /default <platform> [model]")
    plan = plans.set_default(paths, platform, str(args.get("model") or "").strip(), _table(paths))
    return _ok(plans.format_plan(plan, header=f"📋 Default route {plan.default_platform}/{plan.default_model}"),
               plan=plan.model_dump(mode="json"))


def handle_plan_replan(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    plan = plans.replan(paths)
    if plan.request:
        Mailbox(paths).enqueue("in", {"kind": "plan", "text": plan.request})
    return _ok("🔁 Plan discarded; drafting again.", plan=plan.model_dump(mode="json"))


def handle_plan_stop(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    if not plans.stop(paths, str(args.get("reason") or "operator")):
        return _error("no_dispatch", "no active dispatch to stop")
    return _ok("⏹ Stop requested; the dispatch halts before its next task. /kill to end the running agent now.")


def handle_plan_continue(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    d = load_dispatch(paths)
    if d is None or d.status not in ("approved", "executing"):
        return _error("no_dispatch", "no active dispatch")
    if d.mode != "step":
        return _error("not_step_mode", "dispatch runs in auto mode")
    request_continue(paths)
    return _ok("▶️ Continuing.")


# Task recovery


def _recover(paths: RelayPaths, args: Dict[str, Any], target: str) -> OpResult:
    tid = _task_id(args)
    if tid is None:
        return _error("missing_task_id", "usage: /retry <task> or /resolve <task>")
    with edit_dispatch(paths) as d:
        if d is None or d.status not in ("approved", "executing"):
            return _error("no_dispatch", "no active dispatch")
        t = d.task(tid)
        if t is None:
            return _error("task_not_found", f"no task {tid} in dispatch {d.id}")
        if t.status != "error":
            return _error("task_not_failed", f"task {tid} is {t.status}, not error")
        t.status = target  # type: ignore[assignment]
        if target == "done":
            t.summary = "resolved by operator"
        t.error = ""
        d.blocked_reported = False
    verb = "queued for retry" if target == "pending" else "marked done"
    return _ok(f"🔧 Task {tid} {verb}.")


def handle_task_retry(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    return _recover(paths, args, "pending")


def handle_task_resolve(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    return _recover(paths, args, "done")


# Process control


def _restart_controller(paths: RelayPaths) -> Dict[str, Any]:
    AgentRunner(paths).kill_all()
    old_pid = process.stop(paths, "controller")
    SessionLock(paths).release()
    consume_continue(paths)
    new_pid = process.spawn(paths, process.component("controller"))
    return {"old_pid": old_pid, "new_pid": new_pid}


def handle_restart(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    pids = _restart_controller(paths)
    tail = process.log_tail(paths, "controller", 10)
    text = f"♻️ Controller restarted (pid {pids['old_pid'] or '-'} -> {pids['new_pid']})."
    if tail:
        text += "\n\nLast log lines:\n" + "\n".join(tail)
    return _ok(text, log_tail=tail, **pids)


def handle_kill(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    killed = AgentRunner(paths).kill_all()
    released = SessionLock(paths).release()
    consume_continue(paths)
    if not killed and not released:
        return _ok("Nothing was running.", killed=[])
    return _ok(f"💀 Killed {len(killed)} agent process group(s); session lock released.", killed=killed)


def handle_clear_lock(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    lock = SessionLock(paths)
    holder = lock.holder()
    if not lock.release():
        return _ok("No session lock was held.", holder=None)
    return _ok(f"🔓 Session lock cleared (was pid {holder.holder_pid if holder else '?'}).",
               holder=holder.model_dump() if holder else None)


# Watchdog and auto-fix


def handle_watchdog_status(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    st = Watchdog(paths).status()
    lines = ["🐕 Watchdog"]
    for name, c in st["components"].items():
        lines.append(f"{name}: {'up pid ' + str(c['pid']) if c['alive'] else 'down'}")
    lines.append(f"Restarts: {st['restarts_in_window']}/{st['restart_cap']} in the last {st['window_seconds'] // 60} min")
    lines.append(f"Auto-fix: {'on' if st['auto_fix_enabled'] else 'off'}")
    if st["diagnosis_pending"]:
        lines.append("Diagnosis pending")
    if st["last_diagnosis"]:
        ld = st["last_diagnosis"]
        lines.append(f"Last diagnosis: {ld['component']} {ld['severity'] or '?'} {ld['category'] or '?'}")
    if st["pending_fix_branch"]:
        lines.append(f"Fix waiting: {st['pending_fix_branch']} (/apply_fix or /discard_fix)")
    return _ok("\n".join(lines), watchdog=st)


def handle_diagnose(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    component = str(args.get("component") or "controller").strip()
    if component not in process.COMPONENTS:
        return _error("unknown_component", f"unknown component: {component}")
    with edit_watchdog_state(paths) as st:
        if st.diagnosis_pending:
            return _error("diagnosis_pending", f"a diagnosis of {st.diagnosis_component} is already pending")
        st.diagnosis_pending = True
        st.diagnosis_component = component
    return _ok(f"🩺 Diagnosis of {component} queued for the next watchdog tick.")


def handle_autofix(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    with edit_state(paths) as state:
        if "enabled" in args and args["enabled"] is not None:
            state.auto_fix_enabled = coerce_bool(args["enabled"])
        else:
            state.auto_fix_enabled = not state.auto_fix_enabled
        enabled = state.auto_fix_enabled
    return _ok(f"🔧 Auto-fix {'enabled' if enabled else 'disabled'}.", enabled=enabled)


def handle_apply_fix(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    dog = Watchdog(paths)
    ok, detail = dog.remediator.apply_fix()
    if not ok:
        return _error("apply_failed", detail)
    pids = _restart_controller(paths)
    return _ok(f"✅ Merged {detail}; controller restarted (pid {pids['new_pid']}).", branch=detail, **pids)


def handle_discard_fix(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    ok, detail = Watchdog(paths).remediator.discard_fix()
    if not ok:
        return _error("discard_failed", detail)
    return _ok(f"🗑 Discarded {detail}.", branch=detail)


# Status


def handle_status(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    state = load_state(paths)
    d = load_dispatch(paths)
    lock = SessionLock(paths)
    holder = lock.holder()
    counts = Mailbox(paths).counts()
    components = {}
    for name in process.COMPONENTS:
        alive, pid = process.component_alive(paths, name)
        components[name] = {"alive": alive, "pid": pid}

    lines = ["📊 Relay status"]
    lines.append(f"Project: {state.active_project or '(workspace)'} | Backend: {state.backend} {state.model}".rstrip())
    lines.append(f"Plan: {state.plan.status}" + (" (plan mode)" if plans.plan_mode_active(paths) else ""))
    if d is not None:
        done = sum(1 for t in d.tasks if t.status == "done")
        errors = [t.id for t in d.tasks if t.status == "error"]
        line = f"Dispatch {d.id}: {d.status} {d.mode} {done}/{len(d.tasks)} done"
        if errors:
            line += f", errors {errors}"
        if d.awaiting_continue:
            line += ", waiting for /continue"
        lines.append(line)
    if holder is not None:
        age = lock.age_seconds() or 0.0
        lines.append(f"Agent running: pid {holder.holder_pid} for {int(age)}s")
    else:
        lines.append("Agent: idle")
    lines.append(f"Mail: {counts['inbound_unread']} inbound waiting, {counts['outbound_unsent']} outbound unsent")
    for name, c in components.items():
        lines.append(f"{name}: {'up' if c['alive'] else 'down'}")
    return _ok(
        "\n".join(lines),
        plan_status=state.plan.status,
        dispatch=d.model_dump(mode="json") if d else None,
        lock=holder.model_dump() if holder else None,
        mailbox=counts,
        components=components,
    )


def handle_version(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    state = load_state(paths)
    alive, pid = process.component_alive(paths, "controller")
    lines = [
        "ℹ️ agentrelay",
        f"Version: {__version__}",
        f"Backend: {state.backend}",
        f"Model: {state.model or '(tier default)'}",
        f"Controller: up (pid {pid})" if alive else "Controller: down",
    ]
    return _ok("\n".join(lines), version=__version__, backend=state.backend, model=state.model)


# Projects and backend


def handle_project_add(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    name = str(args.get("name") or "").strip()
    raw = str(args.get("path") or "").strip()
    if not name or not raw or any(c.isspace() for c in name):
        return _error("missing_args", "usage: /add <name> <path>")
    path = Path(raw).expanduser()
    if not path.is_dir():
        return _error("not_a_directory", f"not a directory: {raw}")
    projects = add_project(paths, name, path)
    return _ok(f"📁 Added {name} -> {projects[name]}", projects=projects)


def handle_project_use(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    name = str(args.get("name") or "").strip()
    if not name:
        state = load_state(paths)
        return _ok(f"📁 Active project: {state.active_project or '(workspace)'}", active=state.active_project)
    if not use_project(paths, name):
        return _error("project_not_found", f"unknown project: {name} (see /list)")
    return _ok(f"📁 Switched to {name}. A running dispatch keeps its own project.", active=name)


def handle_project_list(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    state = load_state(paths)
    if not state.projects:
        return _ok("No projects. /add <name> <path>", projects={})
    lines = [f"{'*' if n == state.active_project else ' '} {n}: {p}" for n, p in sorted(state.projects.items())]
    return _ok("\n".join(lines), projects=dict(state.projects), active=state.active_project)


def handle_backend(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    backend = str(args.get("backend") or "").strip().lower()
    table = _table(paths)
    if not backend:
        state = load_state(paths)
        return _ok(f"Backend: {state.backend} (available: {', '.join(sorted(table))})", backend=state.backend)
    validate_platform(backend)
    if backend not in table:
        return _error("unknown_backend", f"unknown backend: {backend}", details={"available": sorted(table)})
    with edit_state(paths) as state:
        state.backend = backend
        state.model = ""
    return _ok(f"🤖 Backend set to {backend}.", backend=backend)


def handle_model(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    model = str(args.get("model") or "").strip()
    if not model:
        state = load_state(paths)
        spec = _table(paths).get(state.backend)
        models = list(spec.models) if spec else []
        return _ok(f"Model: {state.model or '(tier default)'}; known: {', '.join(models) or '-'}", model=state.model)
    validate_model_id(model)
    with edit_state(paths) as state:
        state.model = model
    return _ok(f"🤖 Model set to {model}.", model=model)


# Mail


def handle_send(paths: RelayPaths, args: Dict[str, Any]) -> OpResult:
    text = str(args.get("text") or "").strip()
    if not text:
        return _error("missing_text", "nothing to send")
    msg = Mailbox(paths).enqueue("in", text_payload(text))
    return _ok("", message_id=msg.id)


OPS: Dict[str, Handler] = {
    "plan_start": handle_plan_start,
    "plan_show": handle_plan_show,
    "plan_review": handle_plan_review,
    "plan_approve": handle_plan_approve,
    "plan_override": handle_plan_override,
    "plan_default": handle_plan_default,
    "plan_replan": handle_plan_replan,
    "plan_stop": handle_plan_stop,
    "plan_continue": handle_plan_continue,
    "task_retry": handle_task_retry,
    "task_resolve": handle_task_resolve,
    "restart": handle_restart,
    "kill": handle_kill,
    "clear_lock": handle_clear_lock,
    "watchdog_status": handle_watchdog_status,
    "diagnose": handle_diagnose,
    "autofix": handle_autofix,
    "apply_fix": handle_apply_fix,
    "discard_fix": handle_discard_fix,
    "status": handle_status,
    "version": handle_version,
    "project_add": handle_project_add,
    "project_use": handle_project_use,
    "project_list": handle_project_list,
    "backend": handle_backend,
    "model": handle_model,
    "send": handle_send,
}


def handle_op(op: str, args: Optional[Dict[str, Any]] = None, *, paths: Optional[RelayPaths] = None) -> OpResult:
    handler = OPS.get(op)
    if handler is None:
        return _error("unknown_op", f"unknown op: {op}")
    p = paths or default_paths()
    try:
        return handler(p, dict(args or {}))
    except RelayError as e:
        logger.info("op %s refused: %s", op, e, extra={"op": op})
        return _error(type(e).__name__, str(e))
