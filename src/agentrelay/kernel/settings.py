"""Relay settings.

Settings live in <home>/settings.yaml. Every group is optional; missing or
malformed values fall back to the defaults below. Secrets (the chat bot token
and the operator allowlist) may also come from the environment:

- AGENTRELAY_TELEGRAM_TOKEN
- AGENTRELAY_ALLOWED_CHAT_IDS (comma separated)
"""
from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml  # type: ignore

from ..paths import RelayPaths, default_paths
from ..util.conv import coerce_bool, coerce_int, coerce_str_list
from ..util.fs import atomic_write_text

DEFAULT_ALLOWED_EXTENSIONS: Tuple[str, ...] = (".md", ".markdown", ".txt", ".rst", ".adoc")


def load_settings(paths: Optional[RelayPaths] = None) -> Dict[str, Any]:
    p = (paths or default_paths()).settings
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        return {}
    return doc if isinstance(doc, dict) else {}


def save_settings(settings: Dict[str, Any], paths: Optional[RelayPaths] = None) -> None:
    p = (paths or default_paths()).settings
    atomic_write_text(p, yaml.safe_dump(settings, allow_unicode=True, sort_keys=False))


def _group(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    doc = settings.get(name)
    return doc if isinstance(doc, dict) else {}


@dataclass(frozen=True)
class ControllerConfig:
    poll_interval_seconds: float
    turn_timeout_seconds: int
    task_timeout_seconds: int
    max_parallel: int
    auto_review: bool
    tasks_file: str
    prune_interval_seconds: int


@dataclass(frozen=True)
class MailboxConfig:
    max_age_seconds: int
    max_count: int


@dataclass(frozen=True)
class HealthConfig:
    interval_seconds: int
    long_running_seconds: int
    alert_every_seconds: int


@dataclass(frozen=True)
class WatchdogConfig:
    interval_seconds: int
    restart_cap: int
    window_seconds: int
    escalate_after: int
    heartbeat_timeout_seconds: int
    diagnosis_timeout_seconds: int
    log_tail_lines: int
    components: Tuple[str, ...]


@dataclass(frozen=True)
class AutofixConfig:
    repo_path: str
    base_branch: str
    branch_prefix: str
    test_command: Tuple[str, ...]
    test_timeout_seconds: int
    fix_timeout_seconds: int


@dataclass(frozen=True)
class BridgeConfig:
    platform: str
    token: str
    allowed_chat_ids: Tuple[str, ...]
    poll_interval_seconds: float
    max_message_chars: int


@dataclass(frozen=True)
class RelayConfig:
    controller: ControllerConfig
    mailbox: MailboxConfig
    health: HealthConfig
    watchdog: WatchdogConfig
    autofix: AutofixConfig
    bridge: BridgeConfig
    allowed_extensions: Tuple[str, ...]
    platforms: Dict[str, Any]
    log_level: str


def _float(d: Dict[str, Any], key: str, default: float) -> float:
    try:
        v = float(d.get(key, default))
    except (TypeError, ValueError):
        v = float(default)
    return max(0.05, v)


def load_config(paths: Optional[RelayPaths] = None, settings: Optional[Dict[str, Any]] = None) -> RelayConfig:
    s = load_settings(paths) if settings is None else settings

    c = _group(s, "controller")
    m = _group(s, "mailbox")
    h = _group(s, "health")
    w = _group(s, "watchdog")
    a = _group(s, "autofix")
    b = _group(s, "bridge")

    def _int(d: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
        return coerce_int(d.get(key, default), default=default, minimum=minimum)

    exts = tuple(
        e if e.startswith(".") else "." + e
        for e in (e.lower() for e in coerce_str_list(_group(s, "plan_guard").get("allowed_extensions")))
    ) or DEFAULT_ALLOWED_EXTENSIONS

    raw_test = a.get("test_command")
    test_command = tuple(shlex.split(raw_test)) if isinstance(raw_test, str) else tuple(coerce_str_list(raw_test))
    if not test_command:
        test_command = (sys.executable, "-m", "pytest", "-q")

    token = os.environ.get("AGENTRELAY_TELEGRAM_TOKEN", "").strip() or str(b.get("token") or "").strip()
    allowed = coerce_str_list(os.environ.get("AGENTRELAY_ALLOWED_CHAT_IDS")) or coerce_str_list(b.get("allowed_chat_ids"))

    platforms = s.get("platforms")
    return RelayConfig(
        controller=ControllerConfig(
            poll_interval_seconds=_float(c, "poll_interval_seconds", 2.0),
            turn_timeout_seconds=_int(c, "turn_timeout_seconds", 1800, 1),
            task_timeout_seconds=_int(c, "task_timeout_seconds", 1800, 1),
            max_parallel=_int(c, "max_parallel", 3, 1),
            auto_review=coerce_bool(c.get("auto_review"), default=False),
            tasks_file=str(c.get("tasks_file") or "agentrelay_tasks.md"),
            prune_interval_seconds=_int(c, "prune_interval_seconds", 3600, 1),
        ),
        mailbox=MailboxConfig(
            max_age_seconds=_int(m, "max_age_seconds", 7 * 24 * 3600),
            max_count=_int(m, "max_count", 500),
        ),
        health=HealthConfig(
            interval_seconds=_int(h, "interval_seconds", 60, 1),
            long_running_seconds=_int(h, "long_running_seconds", 600, 1),
            alert_every_seconds=_int(h, "alert_every_seconds", 300, 1),
        ),
        watchdog=WatchdogConfig(
            interval_seconds=_int(w, "interval_seconds", 60, 1),
            restart_cap=_int(w, "restart_cap", 3),
            window_seconds=_int(w, "window_seconds", 3600, 1),
            escalate_after=_int(w, "escalate_after", 2, 1),
            heartbeat_timeout_seconds=_int(w, "heartbeat_timeout_seconds", 600),
            diagnosis_timeout_seconds=_int(w, "diagnosis_timeout_seconds", 300, 1),
            log_tail_lines=_int(w, "log_tail_lines", 30, 1),
            components=tuple(coerce_str_list(w.get("components")) or ("controller", "bridge")),
        ),
        autofix=AutofixConfig(
            repo_path=str(a.get("repo_path") or ""),
            base_branch=str(a.get("base_branch") or "main"),
            branch_prefix=str(a.get("branch_prefix") or "hotfix"),
            test_command=test_command,
            test_timeout_seconds=_int(a, "test_timeout_seconds", 600, 1),
            fix_timeout_seconds=_int(a, "fix_timeout_seconds", 900, 1),
        ),
        bridge=BridgeConfig(
            platform=str(b.get("platform") or "telegram").lower(),
            token=token,
            allowed_chat_ids=tuple(allowed),
            poll_interval_seconds=_float(b, "poll_interval_seconds", 0.5),
            max_message_chars=_int(b, "max_message_chars", 4096, 64),
        ),
        allowed_extensions=exts,
        platforms=platforms if isinstance(platforms, dict) else {},
        log_level=str(s.get("log_level") or "INFO"),
    )

