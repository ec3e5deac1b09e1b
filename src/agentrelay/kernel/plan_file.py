"""Parser for the task list the agent writes while drafting a plan.

One unchecked checklist line per task:

    - [ ] api/auth | Add token refresh endpoint | 6/10 | deps: 1 | scope: src/api only
    - [ ] docs/readme | Document refresh flow | 2/10 | parallel | tier: free

Difficulty above 5 routes to the top tier, otherwise mid, unless a `tier:`
field says otherwise. Task ids follow line order starting at 1.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional

from ..contracts.v1 import Task

_LINE_RE = re.compile(
    r"^- \[ \] (?P<category>[\w.-]+/[\w.-]+) \| (?P<description>.+?) \| (?P<difficulty>\d+)/10(?P<rest>(?: \|[^|\n]*)*)\s*$",
    re.MULTILINE,
)


def tier_for_difficulty(difficulty: int) -> str:
    return "top" if difficulty > 5 else "mid"


def _int_list(value: str) -> List[int]:
    return [int(x) for x in re.findall(r"\d+", value)]


def parse_tasks(text: str) -> List[Task]:
    tasks: List[Task] = []
    for i, m in enumerate(_LINE_RE.finditer(text or ""), start=1):
        difficulty = max(0, min(10, int(m.group("difficulty"))))
        fields = {
            "id": i,
            "description": m.group("description").strip(),
            "category": m.group("category"),
            "difficulty": difficulty,
            "tier": tier_for_difficulty(difficulty),
        }
        for part in (p.strip() for p in m.group("rest").split("|")):
            if not part:
                continue
            key, _, value = part.partition(":")
            key = key.strip().lower()
            value = value.strip()
            if key == "parallel" and not value:
                fields["parallel"] = True
            elif key == "deps":
                fields["deps"] = {d for d in _int_list(value) if d != i}
            elif key == "tier" and value in ("top", "mid", "free"):
                fields["tier"] = value
            elif key == "scope":
                fields["scope_boundary"] = value
            elif key == "platform":
                fields["platform"] = value
            elif key == "model":
                fields["model"] = value
        tasks.append(Task.model_validate(fields))
    return tasks


def read_tasks_file(path: Path) -> Optional[List[Task]]:
    """Tasks from `path`, or None when the file is missing or lists none."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    tasks = parse_tasks(text)
    return tasks or None
