from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def relay_home() -> Path:
    env = os.environ.get("AGENTRELAY_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".agentrelay").resolve()


def ensure_home() -> Path:
    home = relay_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


@dataclass(frozen=True)
class RelayPaths:
    """Locations of every durable record shared between relay processes."""

    home: Path

    @property
    def mailbox(self) -> Path:
        return self.home / "mailbox.json"

    @property
    def session_lock(self) -> Path:
        return self.home / "session.lock"

    @property
    def state(self) -> Path:
        return self.home / "state.json"

    @property
    def dispatch(self) -> Path:
        return self.home / "dispatch.json"

    @property
    def continue_flag(self) -> Path:
        return self.home / "dispatch_continue.json"

    @property
    def stop_signal(self) -> Path:
        return self.home / "stop_signal"

    @property
    def plan_mode(self) -> Path:
        return self.home / "plan_mode"

    @property
    def agents(self) -> Path:
        return self.home / "agents.json"

    @property
    def watchdog_state(self) -> Path:
        return self.home / "watchdog.json"

    @property
    def settings(self) -> Path:
        return self.home / "settings.yaml"

    @property
    def run_dir(self) -> Path:
        return self.home / "run"

    @property
    def log_dir(self) -> Path:
        return self.home / "logs"

    @property
    def files_dir(self) -> Path:
        return self.home / "files"

    @property
    def worktree_dir(self) -> Path:
        return self.home / "worktrees"

    @property
    def workspace(self) -> Path:
        """Fallback working directory when no project is selected."""
        return self.home / "workspace"

    def guard(self, path: Path) -> Path:
        """Sidecar flock file serializing writers of `path`."""
        return path.with_name(path.name + ".guard")

    def pid_path(self, component: str) -> Path:
        return self.run_dir / f"{component}.pid"

    def log_path(self, component: str) -> Path:
        return self.log_dir / f"{component}.log"


def default_paths() -> RelayPaths:
    return RelayPaths(home=ensure_home())
