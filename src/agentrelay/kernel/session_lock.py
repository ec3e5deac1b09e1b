"""Single-flight session lock.

`session.lock` records which process is currently running an agent. The
record itself is swapped in atomically; the acquire sequence (read holder,
probe liveness, write self) runs under a flock on a sidecar file so two
contenders can never both observe "free".
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from pydantic import ValidationError

from ..contracts.v1 import LockRecord
from ..paths import RelayPaths, default_paths
from ..util.file_lock import locked
from ..util.fs import atomic_write_json, read_json, remove_file
from ..util.proc import pid_alive
from ..util.time import age_seconds, utc_now_iso

logger = logging.getLogger("agentrelay.session_lock")


class SessionLock:
    def __init__(self, paths: Optional[RelayPaths] = None):
        self.paths = paths or default_paths()
        self.path = self.paths.session_lock

    def holder(self) -> Optional[LockRecord]:
        doc = read_json(self.path)
        if not doc:
            return None
        try:
            return LockRecord.model_validate(doc)
        except ValidationError:
            return None

    def _is_stale(self, rec: Optional[LockRecord]) -> bool:
        return rec is None or not pid_alive(rec.holder_pid)

    def acquire(self, pid: Optional[int] = None) -> bool:
        """Take the lock for `pid` (default: this process).

        Fails while any live process holds it, including `pid` itself.
        A record whose holder is dead, or which does not parse, is reclaimed.
        """
        me = int(pid if pid is not None else os.getpid())
        with locked(self.paths.guard(self.path)):
            if self.path.exists():
                rec = self.holder()
                if not self._is_stale(rec):
                    return False
                logger.warning(
                    "reclaiming stale session lock",
                    extra={"pid": rec.holder_pid if rec else "unparseable"},
                )
            atomic_write_json(self.path, LockRecord(holder_pid=me, acquired_at=utc_now_iso()).model_dump())
        logger.debug("session lock acquired", extra={"pid": me})
        return True

    def release(self) -> bool:
        """Remove the lock regardless of who holds it."""
        with locked(self.paths.guard(self.path)):
            return remove_file(self.path)

    def reclaim_stale(self) -> bool:
        """Health-check path: drop the record if its holder is gone."""
        with locked(self.paths.guard(self.path)):
            if not self.path.exists():
                return False
            rec = self.holder()
            if not self._is_stale(rec):
                return False
            remove_file(self.path)
        logger.warning("removed stale session lock", extra={"pid": rec.holder_pid if rec else "unparseable"})
        return True

    def is_held(self) -> bool:
        return not self._is_stale(self.holder())

    def age_seconds(self) -> Optional[float]:
        rec = self.holder()
        if rec is None:
            return None
        return age_seconds(rec.acquired_at)
