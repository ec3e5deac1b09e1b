"""
Telegram Bot API adapter for the chat bridge.

- _api(): API call wrapper with JSON encoding, timeout, error handling
- poll(): long-poll getUpdates for messages and inline button presses
- rate limiting per chat
- sendDocument via multipart upload
"""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .base import Buttons, IMAdapter

logger = logging.getLogger("agentrelay.bridge.telegram")

# Telegram API limits
TELEGRAM_MAX_MESSAGE_LENGTH = 4096
TELEGRAM_MAX_CAPTION_LENGTH = 1024
TELEGRAM_MAX_CALLBACK_DATA = 64


class RateLimiter:
    """
    Rate limiter for Telegram API.

    Telegram limits:
    - Same chat: ~1 msg/sec
    - Different chats: ~30 msg/sec
    """

    def __init__(self, max_per_second: float = 1.0):
        self.min_interval = 1.0 / max_per_second
        self.last_send: Dict[str, float] = {}  # chat_id -> timestamp
        self.lock = threading.Lock()

    def acquire(self, chat_id: str) -> float:
        """
        Check if we can send to this chat.
        Returns wait time in seconds (0 if can send immediately).
        """
        with self.lock:
            now = time.time()
            elapsed = now - self.last_send.get(chat_id, 0)
            if elapsed >= self.min_interval:
                self.last_send[chat_id] = now
                return 0.0
            return self.min_interval - elapsed

    def wait_and_acquire(self, chat_id: str) -> None:
        """Wait if needed, then acquire."""
        wait_time = self.acquire(chat_id)
        if wait_time > 0:
            time.sleep(wait_time)
            self.acquire(chat_id)


def inline_keyboard(buttons: Buttons) -> Dict[str, Any]:
    """Telegram reply_markup for rows of [label, command]."""
    rows = []
    for row in buttons:
        cells = []
        for cell in row:
            if len(cell) < 2:
                continue
            label, command = str(cell[0]), str(cell[1])
            if len(command.encode("utf-8")) > TELEGRAM_MAX_CALLBACK_DATA:
                continue
            cells.append({"text": label, "callback_data": command})
        if cells:
            rows.append(cells)
    return {"inline_keyboard": rows}


class TelegramAdapter(IMAdapter):
    """
    Telegram Bot API adapter using long-poll getUpdates.
    """

    platform = "telegram"

    def __init__(self, token: str, *, poll_timeout: int = 25):
        self.token = token
        self.poll_timeout = poll_timeout

        self._offset = 0
        self._rate_limiter = RateLimiter(max_per_second=1.0)
        self._connected = False
        self._bot_username = ""

    def _api(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: int = 35,
    ) -> Dict[str, Any]:
        """
        Call Telegram Bot API.

        Uses JSON body for consistent encoding (handles non-ASCII text).
        """
        url = f"https://api.telegram.org/bot{self.token}/{method}"
        data = json.dumps(params or {}, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url, data=data, method="POST")
        req.add_header("Content-Type", "application/json; charset=utf-8")
        req.add_header("Accept", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return json.loads(resp.read().decode("utf-8", errors="replace"))
        except urllib.error.HTTPError as e:
            err_text = ""
            try:
                err_text = e.read().decode("utf-8", "ignore")[:300]
            except OSError:
                pass
            logger.warning("api %s: HTTP %s - %s", method, e.code, err_text)
            return {"ok": False, "error": str(e), "http_status": e.code}
        except (OSError, ValueError) as e:
            logger.warning("api %s: %s", method, e)
            return {"ok": False, "error": str(e)}

    def connect(self) -> bool:
        """Verify token and get bot info."""
        resp = self._api("getMe", timeout=10)
        if not resp.get("ok"):
            logger.error("connect failed: %s", resp.get("error", "unknown error"))
            return False
        info = resp.get("result") or {}
        self._bot_username = str(info.get("username") or "").strip()
        self._connected = True
        logger.info("connected as @%s", self._bot_username or "unknown")
        return True

    def disconnect(self) -> None:
        """Disconnect (no-op for Telegram, just mark as disconnected)."""
        self._connected = False

    def poll(self) -> List[Dict[str, Any]]:
        """
        Long-poll for new messages using getUpdates.

        Returns list of normalized message dicts. Button presses are
        acknowledged here and returned with their command as text.
        """
        if not self._connected:
            return []

        resp = self._api(
            "getUpdates",
            {
                "offset": self._offset,
                "timeout": self.poll_timeout,
                # Edited messages are ignored so a command is never processed twice.
                "allowed_updates": ["message", "callback_query"],
            },
            timeout=self.poll_timeout + 10,
        )
        if not resp.get("ok") or not isinstance(resp.get("result"), list):
            return []

        messages: List[Dict[str, Any]] = []
        for update in resp["result"]:
            if not isinstance(update, dict):
                continue
            try:
                update_id = int(update.get("update_id", 0))
            except (TypeError, ValueError):
                continue
            self._offset = max(self._offset, update_id + 1)
            parsed = self._parse_update(update)
            if parsed is not None:
                parsed["update_id"] = update_id
                messages.append(parsed)
        return messages

    def _parse_update(self, update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cb = update.get("callback_query")
        if isinstance(cb, dict):
            self._api("answerCallbackQuery", {"callback_query_id": cb.get("id")}, timeout=10)
            msg = cb.get("message") if isinstance(cb.get("message"), dict) else {}
            chat = msg.get("chat") if isinstance(msg.get("chat"), dict) else {}
            sender = cb.get("from") if isinstance(cb.get("from"), dict) else {}
            text = str(cb.get("data") or "")
            if not text or "id" not in chat:
                return None
            return {
                "kind": "button",
                "chat_id": str(chat.get("id")),
                "chat_type": str(chat.get("type") or ""),
                "text": text,
                "from_user": sender.get("username") or sender.get("first_name") or "user",
            }

        msg = update.get("message")
        if not isinstance(msg, dict):
            return None
        text = msg.get("text") or msg.get("caption") or ""
        chat = msg.get("chat") if isinstance(msg.get("chat"), dict) else {}
        if not text or "id" not in chat:
            return None
        sender = msg.get("from") if isinstance(msg.get("from"), dict) else {}
        return {
            "kind": "message",
            "chat_id": str(chat.get("id")),
            "chat_type": str(chat.get("type") or ""),
            "text": str(text),
            "from_user": sender.get("username") or sender.get("first_name") or "user",
            "message_id": msg.get("message_id", 0),
        }

    def send_message(self, chat_id: str, text: str, buttons: Optional[Buttons] = None) -> bool:
        """
        Send a message to a chat.

        Handles:
        - Rate limiting
        - Message length limits
        - Retry on failure
        """
        if not text:
            return True
        if len(text) > TELEGRAM_MAX_MESSAGE_LENGTH:
            text = text[: TELEGRAM_MAX_MESSAGE_LENGTH - 1] + "…"

        self._rate_limiter.wait_and_acquire(str(chat_id))

        params: Dict[str, Any] = {
            "chat_id": str(chat_id),
            "text": text,
            "disable_web_page_preview": True,
        }
        if buttons:
            params["reply_markup"] = inline_keyboard(buttons)
        return self._send_with_retry(params)

    def _send_with_retry(self, params: Dict[str, Any], retries: int = 1) -> bool:
        resp = self._api("sendMessage", params, timeout=15)
        if resp.get("ok"):
            return True
        if retries > 0:
            time.sleep(1.0)
            return self._send_with_retry(params, retries=retries - 1)
        logger.warning("send to chat %s failed: %s", params.get("chat_id"), resp.get("error", "unknown"))
        return False

    def _multipart(self, fields: List[Tuple[str, str]], filename: str, raw: bytes) -> Tuple[bytes, str]:
        boundary = "----agentrelay" + uuid.uuid4().hex
        body = b""
        for k, v in fields:
            body += (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{k}"\r\n\r\n'
                f"{v}\r\n"
            ).encode("utf-8")
        body += (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="document"; filename="{filename}"\r\n'
            f"Content-Type: application/octet-stream\r\n\r\n"
        ).encode("utf-8")
        body += raw
        body += f"\r\n--{boundary}--\r\n".encode("utf-8")
        return body, boundary

    def send_document(self, chat_id: str, *, file_path: Path, filename: str = "", caption: str = "") -> bool:
        if not self._connected:
            return False
        try:
            raw = file_path.read_bytes()
        except OSError as e:
            logger.warning("send_document: cannot read %s: %s", file_path, e)
            return False

        self._rate_limiter.wait_and_acquire(str(chat_id))

        fields: List[Tuple[str, str]] = [("chat_id", str(chat_id))]
        if caption:
            fields.append(("caption", caption[:TELEGRAM_MAX_CAPTION_LENGTH]))
        safe_fn = (filename or file_path.name or "file").replace("\\", "_").replace("/", "_").replace('"', "_")
        body, boundary = self._multipart(fields, safe_fn, raw)

        req = urllib.request.Request(f"https://api.telegram.org/bot{self.token}/sendDocument", data=body, method="POST")
        req.add_header("Content-Type", f"multipart/form-data; boundary={boundary}")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=60) as resp:
                out = json.loads(resp.read().decode("utf-8", errors="replace"))
                return bool(out.get("ok"))
        except (OSError, ValueError) as e:
            logger.warning("send_document failed: %s", e)
            return False
