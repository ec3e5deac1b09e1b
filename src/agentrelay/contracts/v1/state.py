from __future__ import annotations

from typing import Dict

from pydantic import BaseModel, ConfigDict, Field

from .plan import Plan


class LockRecord(BaseModel):
    holder_pid: int
    acquired_at: str

    model_config = ConfigDict(extra="ignore")


class RelayState(BaseModel):
    """Controller state: project pointer, backend selection and the current plan."""

    active_project: str = ""
    projects: Dict[str, str] = Field(default_factory=dict)
    backend: str = "gemini"
    model: str = ""
    auto_fix_enabled: bool = False
    plan: Plan = Field(default_factory=Plan)

    model_config = ConfigDict(extra="ignore")
