from __future__ import annotations

from .message import Direction, Message, document_payload, text_payload
from .ops import OpError, OpResult
from .plan import Dispatch, DispatchStatus, PacingMode, Plan, PlanStatus, Task, TaskStatus, Tier
from .state import LockRecord, RelayState
from .watchdog import Diagnosis, RestartRecord, WatchdogState

__all__ = [
    "Diagnosis",
    "Direction",
    "Dispatch",
    "DispatchStatus",
    "LockRecord",
    "Message",
    "OpError",
    "OpResult",
    "PacingMode",
    "Plan",
    "PlanStatus",
    "RelayState",
    "RestartRecord",
    "Task",
    "TaskStatus",
    "Tier",
    "WatchdogState",
    "document_payload",
    "text_payload",
]
