"""
agentrelay chat bridge port.

Architecture:
- Bridge runs as an independent process (`agentrelay bridge run`)
- Inbound: chat messages -> operator ops, or the inbound mailbox
- Outbound: outbound mailbox -> chat
"""

from .bridge import IMBridge, start_bridge

__all__ = ["IMBridge", "start_bridge"]
