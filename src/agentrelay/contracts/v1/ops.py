from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class OpError(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class OpResult(BaseModel):
    """Envelope returned by every operator operation (chat or CLI)."""

    v: int = 1
    ok: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[OpError] = None

    model_config = ConfigDict(extra="forbid")
