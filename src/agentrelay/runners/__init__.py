from __future__ import annotations

from .agent import AgentResult, AgentRunner, InvokeFn

__all__ = ["AgentResult", "AgentRunner", "InvokeFn"]
