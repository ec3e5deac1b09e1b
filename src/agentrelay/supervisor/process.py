"""Spawning and stopping the long-running relay components."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Dict, List, Tuple

from ..paths import RelayPaths
from ..util.fs import read_last_lines, remove_file
from ..util.proc import best_effort_killpg, pid_alive

logger = logging.getLogger("agentrelay.process")

COMPONENTS = ("controller", "bridge")

# Children spawned by this process; polled so exited ones are reaped and stop
# looking alive to the liveness probe.
_CHILDREN: Dict[int, subprocess.Popen] = {}


@dataclass(frozen=True)
class Component:
    name: str
    argv: Tuple[str, ...]


def component(name: str) -> Component:
    if name not in COMPONENTS:
        raise ValueError(f"unknown component: {name}")
    return Component(name=name, argv=(sys.executable, "-m", "agentrelay", name, "run"))


def reap_children() -> None:
    for pid, proc in list(_CHILDREN.items()):
        if proc.poll() is not None:
            _CHILDREN.pop(pid, None)


def read_pid(paths: RelayPaths, name: str) -> int:
    try:
        txt = paths.pid_path(name).read_text(encoding="utf-8").strip()
    except OSError:
        return 0
    return int(txt) if txt.isdigit() else 0


def component_alive(paths: RelayPaths, name: str) -> Tuple[bool, int]:
    reap_children()
    pid = read_pid(paths, name)
    return pid_alive(pid), pid


def spawn(paths: RelayPaths, comp: Component) -> int:
    paths.log_dir.mkdir(parents=True, exist_ok=True)
    env = os.environ.copy()
    env["AGENTRELAY_HOME"] = str(paths.home)
    with paths.log_path(comp.name).open("a", encoding="utf-8") as log_f:
        p = subprocess.Popen(
            list(comp.argv),
            stdout=log_f,
            stderr=log_f,
            stdin=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
            cwd=str(paths.home),
        )
    _CHILDREN[p.pid] = p
    # The component rewrites this on startup.
    paths.pid_path(comp.name).parent.mkdir(parents=True, exist_ok=True)
    paths.pid_path(comp.name).write_text(f"{p.pid}\n", encoding="utf-8")
    logger.info("spawned %s", comp.name, extra={"component": comp.name, "pid": p.pid})
    return int(p.pid)


def stop(paths: RelayPaths, name: str, *, timeout: float = 10.0) -> int:
    """SIGTERM the component's process group, SIGKILL after `timeout`. Returns the old pid."""
    alive, pid = component_alive(paths, name)
    if alive:
        best_effort_killpg(pid, signal.SIGTERM)
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            reap_children()
            if not pid_alive(pid):
                break
            time.sleep(0.2)
        else:
            best_effort_killpg(pid, signal.SIGKILL)
        logger.info("stopped %s", name, extra={"component": name, "pid": pid})
    remove_file(paths.pid_path(name))
    return pid


def log_tail(paths: RelayPaths, name: str, n: int) -> List[str]:
    return read_last_lines(paths.log_path(name), n)
