"""Plan approval state machine.

    none -> pending_review -> confirming -> approved -> executing -> {done, stopped}

`replan` returns to none from any state except executing and discards the
dispatch. `approved -> stopped` covers a stop before the first task runs.
Self-loops: pending_review (redraft), confirming (override / defaults).

The plan-mode marker is a separate file, not a plan status. While it is set,
agent turns run under the plan guard; approval clears it.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..contracts.v1 import Dispatch, PacingMode, Plan, PlanStatus, Task
from ..paths import RelayPaths
from ..util.fs import atomic_write_text, remove_file
from ..util.time import utc_now_iso
from .dispatch import clear_dispatch, clear_stop, consume_continue, load_dispatch, request_stop, save_dispatch
from .errors import RelayError
from .mailbox import Mailbox
from .routing import TIER_EMOJI, PlatformSpec, apply_tier_defaults, check_route
from .state import active_project_path, edit_state, load_state

logger = logging.getLogger("agentrelay.plan")

TRANSITIONS: Dict[str, frozenset] = {
    "none": frozenset({"pending_review"}),
    "pending_review": frozenset({"pending_review", "confirming"}),
    "confirming": frozenset({"confirming", "approved"}),
    "approved": frozenset({"executing", "stopped"}),
    "executing": frozenset({"done", "stopped"}),
    "done": frozenset(),
    "stopped": frozenset(),
}


class PlanTransitionError(RelayError, ValueError):
    def __init__(self, current: str, target: str):
        super().__init__(f"plan cannot move from {current} to {target}")
        self.current = current
        self.target = target


def check_transition(current: PlanStatus, target: PlanStatus) -> None:
    if target not in TRANSITIONS.get(current, frozenset()):
        raise PlanTransitionError(current, target)


def _move(plan: Plan, target: PlanStatus) -> None:
    check_transition(plan.status, target)
    logger.info("plan %s -> %s", plan.status, target)
    plan.status = target


# Plan-mode marker


def set_plan_mode(paths: RelayPaths, reason: str = "plan") -> None:
    atomic_write_text(paths.plan_mode, f"{reason}\n{utc_now_iso()}\n")


def clear_plan_mode(paths: RelayPaths) -> bool:
    cleared = remove_file(paths.plan_mode)
    if cleared:
        logger.info("plan mode cleared")
    return cleared


def plan_mode_active(paths: RelayPaths) -> bool:
    return paths.plan_mode.exists()


# Operations


def current_plan(paths: RelayPaths) -> Plan:
    return load_state(paths).plan


def start_planning(paths: RelayPaths, request: str) -> Plan:
    """Begin a fresh plan for the active project, enter plan mode and queue the planning turn."""
    with edit_state(paths) as state:
        if state.plan.status == "executing":
            raise PlanTransitionError("executing", "none")
        project = active_project_path(state, paths)
        state.plan = Plan(status="none", request=request.strip(), project_path=str(project))
        plan = state.plan.model_copy(deep=True)
    clear_dispatch(paths)
    consume_continue(paths)
    set_plan_mode(paths, "plan")
    Mailbox(paths).enqueue("in", {"kind": "plan", "text": plan.request})
    return plan


def load_draft(paths: RelayPaths, tasks: List[Task], *, project_path: str = "", spec_path: str = "") -> Plan:
    """Replace the draft with tasks proposed by the agent."""
    with edit_state(paths) as state:
        plan = state.plan
        _move(plan, "pending_review")
        plan.tasks = [t.model_copy(deep=True) for t in tasks]
        if not plan.project_path:
            plan.project_path = project_path or str(active_project_path(state, paths))
        if spec_path:
            plan.spec_path = spec_path
        return plan.model_copy(deep=True)


def review(paths: RelayPaths, table: Dict[str, PlatformSpec]) -> Plan:
    """Apply tier defaults so every task has a route, and ask for confirmation."""
    with edit_state(paths) as state:
        plan = state.plan
        _move(plan, "confirming")
        apply_tier_defaults(plan, plan.default_platform or state.backend, table)
        return plan.model_copy(deep=True)


def override_task(
    paths: RelayPaths,
    task_id: int,
    platform: str,
    model: str,
    table: Dict[str, PlatformSpec],
) -> Plan:
    platform, model = check_route(platform, model, table)
    with edit_state(paths) as state:
        plan = state.plan
        task = plan.task(task_id)
        if task is None:
            raise KeyError(f"no task {task_id}")
        _move(plan, "confirming")
        apply_tier_defaults(plan, plan.default_platform or state.backend, table)
        task.platform = platform
        task.model = model
        task.overridden = True
        return plan.model_copy(deep=True)


def set_default(paths: RelayPaths, platform: str, model: str, table: Dict[str, PlatformSpec]) -> Plan:
    """Route every task not individually overridden to (platform, model)."""
    platform, model = check_route(platform, model, table)
    with edit_state(paths) as state:
        plan = state.plan
        _move(plan, "confirming")
        plan.default_platform = platform
        plan.default_model = model
        for t in plan.tasks:
            if not t.overridden:
                t.platform = platform
                t.model = model
        return plan.model_copy(deep=True)


def approve(paths: RelayPaths, mode: PacingMode = "step") -> Dispatch:
    """Freeze the confirmed plan into dispatch.json and leave plan mode."""
    with edit_state(paths) as state:
        plan = state.plan
        _move(plan, "approved")
        dispatch = Dispatch(
            mode=mode,
            project_path=plan.project_path or str(active_project_path(state, paths)),
            spec_path=plan.spec_path,
            tasks=[t.model_copy(update={"status": "pending", "error": "", "summary": ""}, deep=True) for t in plan.tasks],
        )
        consume_continue(paths)
        clear_stop(paths)
        save_dispatch(paths, dispatch)
    clear_plan_mode(paths)
    logger.info("dispatch approved", extra={"dispatch_id": dispatch.id, "project": dispatch.project_path})
    return dispatch


def mark_executing(paths: RelayPaths) -> None:
    with edit_state(paths) as state:
        if state.plan.status != "executing":
            _move(state.plan, "executing")


def finish(paths: RelayPaths, status: PlanStatus) -> None:
    with edit_state(paths) as state:
        if state.plan.status != status:
            _move(state.plan, status)


def replan(paths: RelayPaths) -> Plan:
    with edit_state(paths) as state:
        if state.plan.status == "executing":
            raise PlanTransitionError("executing", "none")
        old = state.plan
        state.plan = Plan(status="none", request=old.request, project_path=old.project_path)
        plan = state.plan.model_copy(deep=True)
    clear_dispatch(paths)
    consume_continue(paths)
    set_plan_mode(paths, "replan")
    return plan


def stop(paths: RelayPaths, reason: str = "operator") -> bool:
    """Ask the engine to stop the active dispatch before its next task.

    Cooperative: an agent already running finishes its turn (use kill for
    that). False when there is no approved or executing dispatch.
    """
    d = load_dispatch(paths)
    if d is None or d.status not in ("approved", "executing"):
        return False
    request_stop(paths, reason)
    logger.info("stop requested", extra={"dispatch_id": d.id})
    return True


def format_plan(plan: Plan, *, header: Optional[str] = None) -> str:
    lines = [header or f"📋 Plan ({plan.status})"]
    if plan.request:
        lines.append(f"Request: {plan.request}")
    if plan.project_path:
        lines.append(f"Project: {plan.project_path}")
    if plan.default_platform:
        lines.append(f"Default: {plan.default_platform} {plan.default_model}".rstrip())
    if not plan.tasks:
        lines.append("(no tasks)")
    for t in plan.tasks:
        flags = []
        if t.parallel:
            flags.append("parallel")
        if t.deps:
            flags.append("deps " + ",".join(str(d) for d in sorted(t.deps)))
        route = f"{t.platform}/{t.model}" if t.platform else "unrouted"
        if t.overridden:
            route += " (override)"
        suffix = f" [{'; '.join(flags)}]" if flags else ""
        lines.append(f"{t.id}. {TIER_EMOJI.get(t.tier, '')} {t.description} -> {route}{suffix}")
    return "\n".join(lines)
