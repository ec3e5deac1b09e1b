"""Periodic health checks run from the bridge process.

- reclaim a session lock whose holder died
- alert when one agent invocation has been running for a long time
- alert when the controller goes down and again when it comes back
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from ..contracts.v1 import text_payload
from ..kernel.dispatch import load_dispatch
from ..kernel.mailbox import Mailbox
from ..kernel.session_lock import SessionLock
from ..kernel.settings import HealthConfig
from ..paths import RelayPaths
from .process import component_alive

logger = logging.getLogger("agentrelay.health")


class HealthMonitor:
    def __init__(
        self,
        paths: RelayPaths,
        config: HealthConfig,
        *,
        mailbox: Optional[Mailbox] = None,
        lock: Optional[SessionLock] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.paths = paths
        self.config = config
        self.mailbox = mailbox or Mailbox(paths)
        self.lock = lock or SessionLock(paths)
        self.clock = clock
        self._last_alert = 0.0
        self._controller_down = False
        self._next_check = 0.0

    def _notify(self, text: str) -> None:
        self.mailbox.enqueue("out", text_payload(text))

    def maybe_check(self) -> Optional[Dict[str, Any]]:
        now = self.clock()
        if now < self._next_check:
            return None
        self._next_check = now + self.config.interval_seconds
        return self.check()

    def _in_step_wait(self) -> bool:
        d = load_dispatch(self.paths)
        return d is not None and d.status == "executing" and d.awaiting_continue

    def check(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {"stale_lock_removed": False, "long_running_alert": False}
        holder = self.lock.holder()
        if self.lock.reclaim_stale():
            report["stale_lock_removed"] = True
            pid = holder.holder_pid if holder else "?"
            self._notify(f"🔓 Removed stale session lock (pid {pid} is gone).")

        age = self.lock.age_seconds()
        if age is not None and age >= self.config.long_running_seconds and not self._in_step_wait():
            now = self.clock()
            if now - self._last_alert >= self.config.alert_every_seconds:
                self._last_alert = now
                report["long_running_alert"] = True
                self._notify(f"⏳ Agent has been running for {int(age // 60)} min. /kill to force-stop it.")
        elif age is None:
            self._last_alert = 0.0

        alive, pid = component_alive(self.paths, "controller")
        report["controller_alive"] = alive
        if not alive and not self._controller_down:
            self._controller_down = True
            logger.warning("controller is down")
            self._notify("🔴 Controller is down. The watchdog will restart it; /restart to do it now.")
        elif alive and self._controller_down:
            self._controller_down = False
            self._notify(f"🟢 Controller is back (pid {pid}).")
        return report
