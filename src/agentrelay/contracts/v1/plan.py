from __future__ import annotations

import uuid
from typing import List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from ...util.time import utc_now_iso

Tier = Literal["top", "mid", "free"]
TaskStatus = Literal["pending", "done", "error"]
PlanStatus = Literal["none", "pending_review", "confirming", "approved", "executing", "done", "stopped"]
DispatchStatus = Literal["approved", "executing", "done", "stopped"]
PacingMode = Literal["step", "auto"]


class Task(BaseModel):
    id: int
    description: str
    tier: Tier = "mid"
    platform: str = ""
    model: str = ""
    parallel: bool = False
    deps: Set[int] = Field(default_factory=set)
    status: TaskStatus = "pending"
    scope_boundary: str = ""
    category: str = ""
    difficulty: int = 0
    overridden: bool = False
    error: str = ""
    summary: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_serializer("deps")
    def _serialize_deps(self, deps: Set[int]) -> List[int]:
        return sorted(deps)


class Plan(BaseModel):
    status: PlanStatus = "none"
    request: str = ""
    default_platform: str = ""
    default_model: str = ""
    project_path: str = ""
    spec_path: str = ""
    tasks: List[Task] = Field(default_factory=list)
    updated_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")

    def task(self, task_id: int) -> Optional[Task]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None


def _dispatch_id() -> str:
    return uuid.uuid4().hex[:8]


class Dispatch(BaseModel):
    """Approved execution snapshot.

    `project_path` and the task definitions are fixed at approval; only task
    status fields and pacing flags change afterwards.
    """

    id: str = Field(default_factory=_dispatch_id)
    created_at: str = Field(default_factory=utc_now_iso)
    status: DispatchStatus = "approved"
    mode: PacingMode = "step"
    project_path: str
    spec_path: str = ""
    awaiting_continue: bool = False
    blocked_reported: bool = False
    tasks: List[Task] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    def task(self, task_id: int) -> Optional[Task]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None
