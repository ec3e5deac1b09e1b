"""Revert code changes made by an agent turn while plan mode is on.

Usage:

    with PlanGuard(project_dir, allowed_extensions) as guard:
        run_agent_turn(...)
    guard.report  # what was reverted

Files whose suffix is in the allow-list (docs/spec formats) are never
touched. Every other file is backed up before the turn; afterwards new ones
are deleted and modified or deleted ones are restored from the backup.
"""
from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .settings import DEFAULT_ALLOWED_EXTENSIONS

logger = logging.getLogger("agentrelay.plan_guard")

SKIP_DIRS = frozenset({".git", "node_modules", ".venv", "venv", "__pycache__", ".mypy_cache", ".pytest_cache"})


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass
class GuardReport:
    restored: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.restored or self.removed)


class PlanGuard:
    def __init__(self, root: Path, allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS):
        self.root = Path(root)
        self.allowed = frozenset(e.lower() for e in allowed_extensions)
        self.report = GuardReport()
        self._digests: Dict[str, str] = {}
        self._backup: Optional[tempfile.TemporaryDirectory] = None

    def _guarded(self) -> Iterator[Tuple[str, Path]]:
        if not self.root.is_dir():
            return
        stack = [self.root]
        while stack:
            d = stack.pop()
            try:
                entries = list(d.iterdir())
            except OSError:
                continue
            for p in entries:
                if p.is_symlink():
                    continue
                if p.is_dir():
                    if p.name not in SKIP_DIRS:
                        stack.append(p)
                    continue
                if p.suffix.lower() in self.allowed:
                    continue
                yield p.relative_to(self.root).as_posix(), p

    def snapshot(self) -> None:
        self._backup = tempfile.TemporaryDirectory(prefix="agentrelay-guard-")
        base = Path(self._backup.name)
        for rel, p in self._guarded():
            dst = base / rel
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(p, dst)
            self._digests[rel] = _sha256(p)
        logger.debug("plan guard snapshot: %d files under %s", len(self._digests), self.root)

    def restore(self) -> GuardReport:
        if self._backup is None:
            return self.report
        base = Path(self._backup.name)
        seen = set()
        for rel, p in list(self._guarded()):
            seen.add(rel)
            if rel not in self._digests:
                p.unlink()
                self.report.removed.append(rel)
            elif _sha256(p) != self._digests[rel]:
                shutil.copy2(base / rel, p)
                self.report.restored.append(rel)
        for rel in self._digests:
            if rel not in seen:
                dst = self.root / rel
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(base / rel, dst)
                self.report.restored.append(rel)
        self._backup.cleanup()
        self._backup = None
        if self.report.changed:
            logger.warning(
                "plan mode: reverted %d restored, %d removed code files",
                len(self.report.restored),
                len(self.report.removed),
            )
        return self.report

    def __enter__(self) -> "PlanGuard":
        self.snapshot()
        return self

    def __exit__(self, *exc: object) -> None:
        self.restore()
