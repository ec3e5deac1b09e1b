"""Dependency-aware task selection.

Pure functions over a task list. A task is eligible when it is pending and
every id in its deps is done; ties break by ascending id. Deps on errored or
unknown tasks never become satisfied, which is how a failure halts only its
own branch.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from ..contracts.v1 import Task


def _done_ids(tasks: Sequence[Task]) -> set:
    return {t.id for t in tasks if t.status == "done"}


def eligible(tasks: Sequence[Task]) -> List[Task]:
    done = _done_ids(tasks)
    return sorted((t for t in tasks if t.status == "pending" and t.deps <= done), key=lambda t: t.id)


def next_task(tasks: Sequence[Task]) -> Optional[Task]:
    el = eligible(tasks)
    return el[0] if el else None


def parallel_batch(tasks: Sequence[Task], limit: int) -> List[Task]:
    """Tasks to run now.

    If the lowest eligible task is parallel, every eligible parallel task up
    to `limit` runs together; they cannot depend on each other because all
    their deps are already done. Otherwise just the lowest eligible task.
    """
    el = eligible(tasks)
    if not el:
        return []
    if not el[0].parallel or limit <= 1:
        return [el[0]]
    return [t for t in el if t.parallel][:limit]


def is_complete(tasks: Sequence[Task]) -> bool:
    return not any(t.status == "pending" for t in tasks)


def is_blocked(tasks: Sequence[Task]) -> bool:
    return not is_complete(tasks) and not eligible(tasks)


def blockers(tasks: Sequence[Task]) -> Dict[int, List[int]]:
    """Pending task id -> unmet dependency ids."""
    done = _done_ids(tasks)
    return {t.id: sorted(t.deps - done) for t in tasks if t.status == "pending" and not t.deps <= done}
