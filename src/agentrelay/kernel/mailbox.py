"""Durable operator <-> controller mailbox.

The whole mailbox is a single JSON document (`mailbox.json`) holding both
directions in enqueue order. Writers load, modify and atomically replace it
while holding the sidecar flock; readers just read the current document.

Inbound mail is consumed with `drain_unread`, which flips `delivered` in the
same swap that hands the messages out. Outbound mail is read with `pending`
and flipped with `mark_delivered` only after the chat platform accepted it,
so a failed send is retried on the next poll.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..contracts.v1 import Direction, Message
from ..paths import RelayPaths, default_paths
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json
from ..util.time import parse_utc_iso

logger = logging.getLogger("agentrelay.mailbox")


class Mailbox:
    def __init__(self, paths: Optional[RelayPaths] = None):
        self.paths = paths or default_paths()
        self.path = self.paths.mailbox

    def _load(self) -> List[Message]:
        doc = read_json(self.path)
        raw = doc.get("messages")
        if not isinstance(raw, list):
            return []
        out: List[Message] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            try:
                out.append(Message.model_validate(item))
            except ValidationError:
                logger.warning("dropping malformed mailbox entry id=%s", item.get("id"))
        return out

    def _store(self, messages: List[Message]) -> None:
        atomic_write_json(self.path, {"v": 1, "messages": [m.model_dump() for m in messages]})

    def enqueue(self, direction: Direction, payload: Dict[str, Any]) -> Message:
        msg = Message(direction=direction, payload=dict(payload or {}))
        with locked(self.paths.guard(self.path)):
            messages = self._load()
            messages.append(msg)
            self._store(messages)
        logger.debug("enqueued %s message %s", direction, msg.id)
        return msg

    def drain_unread(self, direction: Optional[Direction] = None) -> List[Message]:
        """Return undelivered messages (FIFO) and mark them delivered."""
        with locked(self.paths.guard(self.path)):
            messages = self._load()
            drained = [m for m in messages if not m.delivered and (direction is None or m.direction == direction)]
            if not drained:
                return []
            for m in drained:
                m.delivered = True
            self._store(messages)
        return [m.model_copy() for m in drained]

    def mark_delivered(self, ids: Iterable[str]) -> int:
        """Flip `delivered` on the given undelivered messages; returns how many changed."""
        wanted = set(ids)
        if not wanted:
            return 0
        with locked(self.paths.guard(self.path)):
            messages = self._load()
            changed = 0
            for m in messages:
                if m.id in wanted and not m.delivered:
                    m.delivered = True
                    changed += 1
            if changed:
                self._store(messages)
        return changed

    def pending(self, direction: Optional[Direction] = None) -> List[Message]:
        return [m for m in self._load() if not m.delivered and (direction is None or m.direction == direction)]

    def counts(self) -> Dict[str, int]:
        messages = self._load()
        return {
            "total": len(messages),
            "inbound_unread": sum(1 for m in messages if m.direction == "in" and not m.delivered),
            "outbound_unsent": sum(1 for m in messages if m.direction == "out" and not m.delivered),
        }

    def prune(self, max_age_seconds: float, max_count: int, *, now: Optional[float] = None) -> int:
        """Drop old delivered messages, then the oldest delivered ones beyond max_count.

        Undelivered messages are never pruned, so max_count is a soft limit.
        """
        ts_now = time.time() if now is None else now
        with locked(self.paths.guard(self.path)):
            messages = self._load()
            before = len(messages)

            def _expired(m: Message) -> bool:
                if not m.delivered or max_age_seconds <= 0:
                    return False
                dt = parse_utc_iso(m.ts)
                return dt is None or ts_now - dt.timestamp() > max_age_seconds

            kept = [m for m in messages if not _expired(m)]
            if max_count > 0 and len(kept) > max_count:
                excess = len(kept) - max_count
                trimmed: List[Message] = []
                for m in kept:
                    if excess > 0 and m.delivered:
                        excess -= 1
                        continue
                    trimmed.append(m)
                kept = trimmed
            removed = before - len(kept)
            if removed:
                self._store(kept)
        if removed:
            logger.info("pruned %d mailbox messages", removed)
        return removed
