"""Synchronous, timeout-bounded agent invocations.

Each invocation runs in its own session (process group) so a timeout or a
force-kill takes down the agent and anything it spawned. Live invocations are
recorded in agents.json so another process (the bridge handling /kill) can
find them.
"""
from __future__ import annotations

import logging
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..paths import RelayPaths, default_paths
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from ..util.proc import best_effort_killpg, pid_alive
from ..util.time import utc_now_iso

logger = logging.getLogger("agentrelay.agent")

MARKER_RE = re.compile(r"^@@relay:(?P<name>[a-z_]+)(?:[ \t]+(?P<arg>.*?))?[ \t]*$", re.MULTILINE)
KILL_GRACE_SECONDS = 5.0


@dataclass
class AgentResult:
    exit_code: int
    output: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def markers(self) -> List[Tuple[str, str]]:
        return [(m.group("name"), (m.group("arg") or "").strip()) for m in MARKER_RE.finditer(self.output or "")]

    def marker(self, name: str) -> Optional[str]:
        for n, arg in self.markers:
            if n == name:
                return arg
        return None

    @property
    def reply(self) -> str:
        """Output with marker lines removed."""
        return MARKER_RE.sub("", self.output or "").strip()

    def describe_failure(self) -> str:
        if self.timed_out:
            return f"timed out after {self.duration:.0f}s"
        tail = (self.output or "").strip().splitlines()[-3:]
        return f"exit code {self.exit_code}" + (": " + " | ".join(tail) if tail else "")


InvokeFn = Callable[[List[str], Path, float, str], AgentResult]


class AgentRunner:
    def __init__(self, paths: Optional[RelayPaths] = None):
        self.paths = paths or default_paths()
        self._lock = threading.Lock()

    @property
    def log_path(self) -> Path:
        return self.paths.log_path("agent")

    def _edit_registry(self, fn: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock, locked(self.paths.guard(self.paths.agents)):
            doc = read_json(self.paths.agents)
            agents = doc.get("agents") if isinstance(doc.get("agents"), dict) else {}
            fn(agents)
            atomic_write_json(self.paths.agents, {"agents": agents})

    def running(self) -> Dict[str, Dict[str, Any]]:
        doc = read_json(self.paths.agents)
        agents = doc.get("agents") if isinstance(doc.get("agents"), dict) else {}
        return {pid: info for pid, info in agents.items() if str(pid).isdigit() and pid_alive(int(pid))}

    def _log_output(self, label: str, argv: List[str], result: AgentResult) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(f"=== {utc_now_iso()} {label} argv0={argv[0] if argv else ''} exit={result.exit_code}"
                        f" timed_out={result.timed_out} duration={result.duration:.1f}s\n")
                f.write((result.output or "").rstrip() + "\n")
        except OSError as e:
            logger.warning("cannot write agent log: %s", e)

    def invoke(self, argv: List[str], cwd: Path, timeout: float, label: str = "agent") -> AgentResult:
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            logger.error("agent failed to start: %s", e, extra={"op": label})
            result = AgentResult(exit_code=127, output=str(e))
            self._log_output(label, argv, result)
            return result

        pid = proc.pid
        info = {"label": label, "cwd": str(cwd), "started_at": utc_now_iso()}
        self._edit_registry(lambda a: a.update({str(pid): info}))
        logger.info("agent started", extra={"op": label, "pid": pid})
        timed_out = False
        try:
            try:
                output, _ = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                logger.warning("agent timed out after %ss", timeout, extra={"op": label, "pid": pid})
                best_effort_killpg(pid, signal.SIGTERM)
                try:
                    output, _ = proc.communicate(timeout=KILL_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    best_effort_killpg(pid, signal.SIGKILL)
                    output, _ = proc.communicate()
        finally:
            self._edit_registry(lambda a: a.pop(str(pid), None))

        result = AgentResult(
            exit_code=int(proc.returncode if proc.returncode is not None else -1),
            output=output or "",
            timed_out=timed_out,
            duration=time.monotonic() - started,
        )
        self._log_output(label, argv, result)
        logger.info("agent finished exit=%s", result.exit_code, extra={"op": label, "pid": pid})
        return result

    def kill_all(self, sig: signal.Signals = signal.SIGKILL) -> List[int]:
        """Force-kill every recorded agent process group."""
        killed: List[int] = []
        for pid in self.running():
            best_effort_killpg(int(pid), sig)
            killed.append(int(pid))
        self._edit_registry(lambda a: a.clear())
        if killed:
            logger.warning("force-killed agents %s", killed)
        return killed

