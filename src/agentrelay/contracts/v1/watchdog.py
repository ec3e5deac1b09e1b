from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RestartRecord(BaseModel):
    component: str
    ts: float

    model_config = ConfigDict(extra="ignore")


class Diagnosis(BaseModel):
    component: str = ""
    severity: str = ""
    category: str = ""
    summary: str = ""
    ts: float = 0.0

    model_config = ConfigDict(extra="ignore")


class WatchdogState(BaseModel):
    restarts: List[RestartRecord] = Field(default_factory=list)
    crash_counters: Dict[str, int] = Field(default_factory=dict)
    diagnosis_pending: bool = False
    diagnosis_component: str = ""
    last_diagnosis: Optional[Diagnosis] = None
    pending_fix_branch: str = ""
    fix_base_branch: str = ""
    component_down: Dict[str, bool] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    def prune(self, *, now: float, window_seconds: float) -> None:
        self.restarts = [r for r in self.restarts if now - r.ts < window_seconds]

    def restarts_in_window(self, *, now: float, window_seconds: float, component: str = "") -> List[RestartRecord]:
        return [
            r
            for r in self.restarts
            if now - r.ts < window_seconds and (not component or r.component == component)
        ]
