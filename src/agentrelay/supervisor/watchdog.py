"""Out-of-band watchdog.

Runs as its own process (`agentrelay watchdog run`, or `watchdog tick` from
cron) and relies only on pid files and the durable records, so it keeps
working when the controller is dead.

Each tick:
- restart dead components, at most `restart_cap` restarts per rolling window
  across all components; past the cap it only logs
- treat a controller whose heartbeat is stale while no agent runs as hung
- when one component restarted `escalate_after` times in the window, run one
  read-only diagnosis (deduplicated by `diagnosis_pending`), then optionally
  the guarded auto-fix
"""
from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from ..contracts.v1 import Diagnosis, RestartRecord, text_payload
from ..kernel import git
from ..kernel.mailbox import Mailbox
from ..kernel.session_lock import SessionLock
from ..kernel.settings import RelayConfig, load_config
from ..kernel.state import load_state
from ..kernel.watchdog_state import edit_watchdog_state, load_watchdog_state
from ..paths import RelayPaths, default_paths
from ..runners.agent import AgentRunner, InvokeFn
from ..util.file_lock import LockUnavailableError, locked
from ..util.obslog import setup_root_json_logging
from ..util.time import age_seconds
from . import process
from .autofix import Remediator, is_fixable

logger = logging.getLogger("agentrelay.watchdog")

AliveFn = Callable[[str], Tuple[bool, int]]
SpawnFn = Callable[[str], int]


class Watchdog:
    def __init__(
        self,
        paths: Optional[RelayPaths] = None,
        *,
        config: Optional[RelayConfig] = None,
        invoke: Optional[InvokeFn] = None,
        alive: Optional[AliveFn] = None,
        spawn: Optional[SpawnFn] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.paths = paths or default_paths()
        self.config = config or load_config(self.paths)
        self.mailbox = Mailbox(self.paths)
        self.lock = SessionLock(self.paths)
        self.clock = clock
        self.alive = alive or (lambda name: process.component_alive(self.paths, name))
        self.spawn = spawn or (lambda name: process.spawn(self.paths, process.component(name)))
        self.remediator = Remediator(
            self.paths,
            self.config,
            invoke=invoke or AgentRunner(self.paths).invoke,
            mailbox=self.mailbox,
        )

    @property
    def tick_lock_path(self):
        return self.paths.run_dir / "watchdog.lock"

    def tick(self) -> Dict[str, Any]:
        try:
            with locked(self.tick_lock_path, blocking=False):
                return self._tick()
        except LockUnavailableError:
            logger.info("previous watchdog tick still running; skipping")
            return {"skipped": "tick in progress"}

    def _controller_hung(self) -> bool:
        timeout = self.config.watchdog.heartbeat_timeout_seconds
        if timeout <= 0 or self.lock.is_held():
            return False
        try:
            ts = (self.paths.run_dir / "controller.heartbeat").read_text(encoding="utf-8").strip()
        except OSError:
            return False
        age = age_seconds(ts, now=self.clock())
        return age is not None and age > timeout

    def _tick(self) -> Dict[str, Any]:
        now = self.clock()
        cfg = self.config.watchdog
        report: Dict[str, Any] = {"restarted": [], "capped": [], "diagnosed": "", "fix_branch": ""}

        for name in cfg.components:
            alive, pid = self.alive(name)
            hung = name == "controller" and alive and self._controller_hung()
            if alive and not hung:
                continue

            with edit_watchdog_state(self.paths) as st:
                st.prune(now=now, window_seconds=cfg.window_seconds)
                capped = len(st.restarts) >= cfg.restart_cap
                if not capped:
                    st.restarts.append(RestartRecord(component=name, ts=now))
                    st.crash_counters[name] = st.crash_counters.get(name, 0) + 1
            if capped:
                logger.warning(
                    "%s is down but the restart cap (%d per %ds) is reached",
                    name,
                    cfg.restart_cap,
                    cfg.window_seconds,
                    extra={"component": name},
                )
                report["capped"].append(name)
                continue

            if hung:
                logger.warning("controller heartbeat is stale; restarting it", extra={"pid": pid})
                process.stop(self.paths, name)
            if name == "controller":
                self.lock.reclaim_stale()
            new_pid = self.spawn(name)
            report["restarted"].append(name)
            self.mailbox.enqueue("out", text_payload(f"♻️ Watchdog restarted {name} (pid {new_pid})."))

        diagnosed, branch = self._escalate(now)
        report["diagnosed"] = diagnosed
        report["fix_branch"] = branch
        return report

    def _escalation_target(self, now: float) -> str:
        cfg = self.config.watchdog
        st = load_watchdog_state(self.paths)
        if st.diagnosis_pending:
            return st.diagnosis_component
        for name in cfg.components:
            recs = st.restarts_in_window(now=now, window_seconds=cfg.window_seconds, component=name)
            if len(recs) < cfg.escalate_after:
                continue
            last = st.last_diagnosis
            if last is not None and last.component == name and last.ts >= max(r.ts for r in recs):
                continue
            with edit_watchdog_state(self.paths) as cur:
                cur.diagnosis_pending = True
                cur.diagnosis_component = name
            logger.warning("escalating %s to diagnosis", name, extra={"component": name})
            return name
        return ""

    def _escalate(self, now: float) -> Tuple[str, str]:
        component = self._escalation_target(now)
        if not component:
            return "", ""
        if not self.lock.acquire():
            logger.info("diagnosis deferred: session busy", extra={"component": component})
            return "", ""
        branch = ""
        diag: Optional[Diagnosis] = None
        try:
            restarts = len(
                load_watchdog_state(self.paths).restarts_in_window(
                    now=now, window_seconds=self.config.watchdog.window_seconds, component=component
                )
            )
            diag = self.remediator.diagnose(component, restarts)
            if diag is not None and load_state(self.paths).auto_fix_enabled and is_fixable(diag):
                try:
                    branch = self.remediator.attempt_fix(diag)
                except git.GitError as e:
                    logger.error("auto-fix failed: %s", e)
                    self.mailbox.enqueue("out", text_payload(f"🔧 Auto-fix failed: {e}"))
        finally:
            self.lock.release()
        with edit_watchdog_state(self.paths) as st:
            st.diagnosis_pending = False
            st.diagnosis_component = ""
            if diag is None:
                diag = Diagnosis(component=component, summary="diagnosis failed")
            # Same clock as the restart records.
            st.last_diagnosis = diag.model_copy(update={"ts": self.clock()})
        return component, branch

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        cfg = self.config.watchdog
        st = load_watchdog_state(self.paths)
        components = {}
        for name in cfg.components:
            alive, pid = self.alive(name)
            components[name] = {"alive": alive, "pid": pid}
        return {
            "components": components,
            "restarts_in_window": len(st.restarts_in_window(now=now, window_seconds=cfg.window_seconds)),
            "restart_cap": cfg.restart_cap,
            "window_seconds": cfg.window_seconds,
            "crash_counters": dict(st.crash_counters),
            "last_restart": max((r.ts for r in st.restarts), default=0.0),
            "diagnosis_pending": st.diagnosis_pending,
            "last_diagnosis": st.last_diagnosis.model_dump() if st.last_diagnosis else None,
            "pending_fix_branch": st.pending_fix_branch,
            "auto_fix_enabled": load_state(self.paths).auto_fix_enabled,
        }


def run_watchdog(paths: Optional[RelayPaths] = None) -> int:
    p = paths or default_paths()
    config = load_config(p)
    setup_root_json_logging(component="watchdog", level=config.log_level)
    dog = Watchdog(p, config=config)
    stop = threading.Event()

    def _on_signal(signum: int, frame: Any) -> None:
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)
    logger.info("watchdog started (interval %ss)", config.watchdog.interval_seconds)
    while not stop.is_set():
        try:
            dog.tick()
        except Exception:
            logger.exception("watchdog tick failed")
        stop.wait(config.watchdog.interval_seconds)
    return 0
