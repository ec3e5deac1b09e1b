"""
Chat bridge - core logic.

Handles:
- Inbound: allowlisted chat messages -> operator ops or inbound mail
- Outbound: outbound mail -> chat (long replies as documents)
- Health checks (stale lock, long-running agent, controller down)
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from ...contracts.v1 import Message, OpResult, text_payload
from ...controller.loop import CONFIRM_BUTTONS
from ...controller.ops import handle_op
from ...kernel.mailbox import Mailbox
from ...kernel.settings import RelayConfig, load_config
from ...paths import RelayPaths, default_paths
from ...supervisor.health import HealthMonitor
from ...util.file_lock import LockUnavailableError, acquire_lockfile, release_lockfile
from ...util.fs import atomic_write_text, remove_file
from ...util.obslog import setup_root_json_logging
from .adapters.base import IMAdapter
from .adapters.telegram import TelegramAdapter
from .commands import CommandType, format_help, parse_message, to_op

logger = logging.getLogger("agentrelay.bridge")

OpHandler = Callable[..., OpResult]


class IMBridge:
    """
    Coordinates:
    - Adapter (platform-specific communication)
    - Operator allowlist
    - Command processing
    - Outbound mail delivery
    """

    def __init__(
        self,
        paths: RelayPaths,
        adapter: IMAdapter,
        config: RelayConfig,
        *,
        handle: OpHandler = handle_op,
        health: Optional[HealthMonitor] = None,
    ):
        self.paths = paths
        self.adapter = adapter
        self.config = config
        self.handle = handle
        self.mailbox = Mailbox(paths)
        self.health = health
        self._stop = threading.Event()
        # message id -> chats already sent to, for mail not yet marked delivered
        self._reached: Dict[str, Set[str]] = {}

    @property
    def chats(self) -> List[str]:
        return list(self.config.bridge.allowed_chat_ids)

    def is_allowed(self, chat_id: str) -> bool:
        return bool(chat_id) and chat_id in self.config.bridge.allowed_chat_ids

    def start(self) -> bool:
        if not self.chats:
            logger.warning("no allowed_chat_ids configured; every chat will be ignored")
        if not self.adapter.connect():
            logger.error("failed to connect %s adapter", self.adapter.platform)
            return False
        return True

    def stop(self) -> None:
        self._stop.set()
        self.adapter.disconnect()

    def run_once(self) -> None:
        self.process_inbound()
        self.process_outbound()
        if self.health is not None:
            self.health.maybe_check()

    def run_forever(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("bridge iteration failed")
            self._stop.wait(self.config.bridge.poll_interval_seconds)

    # Inbound

    def process_inbound(self) -> int:
        handled = 0
        for msg in self.adapter.poll():
            chat_id = str(msg.get("chat_id") or "").strip()
            text = str(msg.get("text") or "")
            if not self.is_allowed(chat_id):
                logger.warning("ignoring %s from chat %s: not allowlisted", msg.get("kind", "message"), chat_id)
                continue
            if not text.strip():
                continue
            self.handle_text(chat_id, text)
            handled += 1
        return handled

    def handle_text(self, chat_id: str, text: str) -> None:
        parsed = parse_message(text)
        if parsed.type == CommandType.HELP:
            self.adapter.send_message(chat_id, format_help())
            return
        if parsed.type == CommandType.MESSAGE:
            if text.lstrip().startswith("/"):
                self.adapter.send_message(chat_id, "❓ Unknown command. Use /help.")
                return
            resp = self.handle("send", {"text": parsed.text}, paths=self.paths)
            if not resp.ok and resp.error is not None:
                self.adapter.send_message(chat_id, f"❌ Failed to queue: {resp.error.message}")
            return

        op = to_op(parsed)
        if op is None:
            return
        name, args = op
        logger.info("command /%s", parsed.type.value, extra={"op": name})
        resp = self.handle(name, args, paths=self.paths)
        if resp.ok:
            reply = str(resp.result.get("text") or "")
            if reply:
                self.adapter.send_message(chat_id, reply, buttons=_buttons_for(name))
        else:
            err = resp.error.message if resp.error is not None else "unknown error"
            self.adapter.send_message(chat_id, f"❌ {err}")

    # Outbound

    def process_outbound(self) -> int:
        chats = self.chats
        if not chats:
            return 0
        sent = 0
        delivered: List[str] = []
        for m in self.mailbox.pending("out"):
            reached = self._reached.setdefault(m.id, set())
            failed = False
            for chat_id in chats:
                if chat_id in reached:
                    continue
                if self.deliver(chat_id, m):
                    reached.add(chat_id)
                    sent += 1
                else:
                    logger.warning("delivery of %s to %s failed; will retry", m.id, chat_id)
                    failed = True
                    break
            if failed:
                # Keep FIFO order: later mail waits behind the failed message.
                break
            delivered.append(m.id)
            del self._reached[m.id]
        self.mailbox.mark_delivered(delivered)
        return sent

    def deliver(self, chat_id: str, m: Message) -> bool:
        p = m.payload
        if m.kind == "document":
            path = Path(str(p.get("file_path") or ""))
            if not path.is_file():
                return self.adapter.send_message(chat_id, f"⚠️ File not found: {path}")
            return self.adapter.send_document(
                chat_id,
                file_path=path,
                filename=str(p.get("filename") or path.name),
                caption=str(p.get("caption") or ""),
            )

        text = m.text
        buttons = p.get("buttons") if isinstance(p.get("buttons"), list) else None
        if len(text) <= self.config.bridge.max_message_chars:
            return self.adapter.send_message(chat_id, text, buttons=buttons)

        path = self.paths.files_dir / f"reply-{m.id}.txt"
        if not path.exists():
            atomic_write_text(path, text)
        preview = text[:200].rstrip() + "…"
        ok = self.adapter.send_document(chat_id, file_path=path, filename=path.name, caption=preview)
        if ok and buttons:
            self.adapter.send_message(chat_id, "⬆️ Full reply attached.", buttons=buttons)
        return ok


def _buttons_for(op: str) -> Optional[List[List[List[str]]]]:
    if op in ("plan_review", "plan_override", "plan_default"):
        return CONFIRM_BUTTONS
    return None


def _make_adapter(config: RelayConfig) -> Optional[IMAdapter]:
    if config.bridge.platform == "telegram":
        return TelegramAdapter(token=config.bridge.token, poll_timeout=5)
    return None


def start_bridge(paths: Optional[RelayPaths] = None) -> int:
    p = paths or default_paths()
    config = load_config(p)
    setup_root_json_logging(component="bridge", level=config.log_level)

    if not config.bridge.token:
        logger.error("no bot token configured (AGENTRELAY_TELEGRAM_TOKEN or bridge.token)")
        return 1
    adapter = _make_adapter(config)
    if adapter is None:
        logger.error("unsupported chat platform: %s", config.bridge.platform)
        return 1

    # Singleton: a second bridge would consume the same outbound mail.
    try:
        lock_file = acquire_lockfile(p.run_dir / "bridge.lock", blocking=False)
    except LockUnavailableError:
        logger.error("another bridge instance is already running")
        return 1

    pid_path = p.pid_path("bridge")
    atomic_write_text(pid_path, f"{os.getpid()}\n")
    bridge = IMBridge(p, adapter, config, health=HealthMonitor(p, config.health))

    def _on_signal(signum: int, frame: Any) -> None:
        logger.info("signal %s received, stopping", signum)
        bridge.stop()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    try:
        if not bridge.start():
            return 1
        logger.info("bridge started", extra={"pid": os.getpid()})
        Mailbox(p).enqueue("out", text_payload(f"🟢 Relay bridge online (pid {os.getpid()}). /help for commands."))
        bridge.run_forever()
    finally:
        remove_file(pid_path)
        release_lockfile(lock_file)
    logger.info("bridge stopped")
    return 0
