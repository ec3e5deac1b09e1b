"""Controller process: the single polling loop.

Each iteration:
1. advance the approved dispatch by one step (dispatch.py)
2. if the session is free and inbound mail is waiting, drain it and run one
   agent turn (a planning turn while plan mode is on)
3. prune delivered mail now and then

The loop polls at a fixed interval; it does not watch the filesystem.
"""
from __future__ import annotations

import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import Any, List, Optional

from ..contracts.v1 import Message, document_payload, text_payload
from ..kernel.mailbox import Mailbox
from ..kernel.plan import PlanTransitionError, current_plan, format_plan, load_draft, plan_mode_active, review
from ..kernel.plan_file import read_tasks_file
from ..kernel.plan_guard import PlanGuard
from ..kernel.prompts import chat_turn_prompt, planning_prompt
from ..kernel.routing import build_argv, platform_table, resolve_route
from ..kernel.session_lock import SessionLock
from ..kernel.settings import RelayConfig, load_config
from ..kernel.state import active_project_path, load_state
from ..kernel.tokens import InvalidTokenError
from ..paths import RelayPaths, default_paths
from ..runners.agent import AgentResult, AgentRunner, InvokeFn
from ..util.fs import atomic_write_text, remove_file
from ..util.obslog import setup_root_json_logging
from ..util.time import utc_now_iso
from .dispatch import DispatchEngine

logger = logging.getLogger("agentrelay.controller")

REVIEW_BUTTONS = [[["🔎 Review", "/review"], ["🔁 Replan", "/replan"]]]
CONFIRM_BUTTONS = [
    [["✅ Approve (step)", "/approve step"], ["⏩ Approve (auto)", "/approve auto"]],
    [["🔁 Replan", "/replan"]],
]


class Controller:
    def __init__(
        self,
        paths: Optional[RelayPaths] = None,
        *,
        config: Optional[RelayConfig] = None,
        invoke: Optional[InvokeFn] = None,
    ):
        self.paths = paths or default_paths()
        self.config = config or load_config(self.paths)
        self.mailbox = Mailbox(self.paths)
        self.lock = SessionLock(self.paths)
        self.invoke = invoke or AgentRunner(self.paths).invoke
        self.engine = DispatchEngine(self.paths, self.config, invoke=self.invoke, mailbox=self.mailbox, lock=self.lock)
        self._stop = threading.Event()
        self._next_prune = 0.0

    def _notify(self, text: str, **kw: Any) -> None:
        self.mailbox.enqueue("out", text_payload(text, **kw))

    def heartbeat(self) -> None:
        atomic_write_text(self.paths.run_dir / "controller.heartbeat", utc_now_iso() + "\n")

    def run_once(self) -> None:
        self.heartbeat()
        self.engine.step()
        self.process_inbound()
        now = time.time()
        if now >= self._next_prune:
            self._next_prune = now + self.config.controller.prune_interval_seconds
            self.mailbox.prune(self.config.mailbox.max_age_seconds, self.config.mailbox.max_count)

    def run_forever(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("controller iteration failed")
            self._stop.wait(self.config.controller.poll_interval_seconds)

    def stop(self) -> None:
        self._stop.set()

    # Agent turns

    def process_inbound(self) -> bool:
        """Run one agent turn over all waiting inbound mail. False if nothing ran."""
        if not self.mailbox.pending("in"):
            return False
        if not self.lock.acquire():
            # Another invocation holds the session; mail stays queued.
            return False
        try:
            messages = self.mailbox.drain_unread("in")
            if not messages:
                return False
            self._run_turn(messages)
        finally:
            self.lock.release()
        return True

    def _run_turn(self, messages: List[Message]) -> None:
        state = load_state(self.paths)
        planning = plan_mode_active(self.paths)
        plan = state.plan
        project = Path(plan.project_path) if planning and plan.project_path else active_project_path(state, self.paths)
        tasks_file = self.config.controller.tasks_file

        if planning:
            request = next((m.text for m in messages if m.kind == "plan"), "") or plan.request
            notes = [m for m in messages if m.kind != "plan"]
            prompt = planning_prompt(request, notes, project=str(project), tasks_file=tasks_file)
        else:
            prompt = chat_turn_prompt(messages, project=str(project))

        table = platform_table(self.config.platforms)
        spec = table.get(state.backend)
        try:
            if spec is None:
                raise InvalidTokenError(f"unknown backend: {state.backend!r}")
            model = state.model or resolve_route("mid", state.backend, table)[1]
            argv = build_argv(spec, model=model, prompt=prompt)
        except InvalidTokenError as e:
            logger.error("cannot build agent command: %s", e)
            self._notify(f"⚠️ Cannot run agent: {e}")
            return

        timeout = float(self.config.controller.turn_timeout_seconds)
        label = "plan-turn" if planning else "chat-turn"
        if planning:
            with PlanGuard(project, self.config.allowed_extensions) as guard:
                result = self.invoke(argv, project, timeout, label)
            if guard.report.changed:
                reverted = guard.report.restored + guard.report.removed
                self._notify("🛡 Plan mode reverted code changes: " + ", ".join(sorted(reverted)[:20]))
        else:
            result = self.invoke(argv, project, timeout, label)

        self._relay_result(result, project)
        if planning:
            self._load_draft(result, project)

    def _relay_result(self, result: AgentResult, project: Path) -> None:
        reply = result.reply
        if not result.ok:
            self._notify(f"⚠️ Agent turn failed ({result.describe_failure()})")
        if reply:
            self._notify(reply)
        for name, arg in result.markers:
            if name != "send_file" or not arg:
                continue
            p = (project / arg).resolve() if not Path(arg).is_absolute() else Path(arg)
            if p.is_file():
                self.mailbox.enqueue("out", document_payload(str(p), caption=p.name))
            else:
                logger.warning("agent asked to send missing file %s", p)

    def _load_draft(self, result: AgentResult, project: Path) -> None:
        rel = result.marker("plan_ready") or self.config.controller.tasks_file
        path = Path(rel) if Path(rel).is_absolute() else project / rel
        tasks = read_tasks_file(path)
        if not tasks:
            return
        try:
            plan = load_draft(self.paths, tasks, project_path=str(project), spec_path=str(path))
        except PlanTransitionError:
            status = current_plan(self.paths).status
            if status == "confirming" and result.marker("plan_ready") is not None:
                self._notify("Plan is awaiting confirmation; task list changes are ignored. Use /replan to redraft.")
            return
        if self.config.controller.auto_review:
            try:
                plan = review(self.paths, platform_table(self.config.platforms))
            except (PlanTransitionError, InvalidTokenError) as e:
                self._notify(f"⚠️ Review failed: {e}")
                return
            self._notify(format_plan(plan), buttons=CONFIRM_BUTTONS)
            return
        self._notify(format_plan(plan, header="📋 Draft plan ready"), buttons=REVIEW_BUTTONS)


def run_controller(paths: Optional[RelayPaths] = None) -> int:
    p = paths or default_paths()
    config = load_config(p)
    setup_root_json_logging(component="controller", level=config.log_level)
    controller = Controller(p, config=config)
    pid_path = p.pid_path("controller")
    atomic_write_text(pid_path, f"{os.getpid()}\n")

    def _on_signal(signum: int, frame: Any) -> None:
        logger.info("signal %s received, stopping", signum)
        controller.stop()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)
    logger.info("controller started", extra={"pid": os.getpid()})
    try:
        controller.run_forever()
    finally:
        remove_file(pid_path)
    logger.info("controller stopped")
    return 0
