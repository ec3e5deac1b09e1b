"""
Base class for chat platform adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

Buttons = List[List[List[str]]]  # rows of [label, command]


class IMAdapter(ABC):
    """
    Abstract base class for chat platform adapters.

    Each adapter handles:
    - Connecting to the platform
    - Receiving messages and button presses (inbound)
    - Sending messages and documents (outbound)
    """

    platform: str = "unknown"

    @abstractmethod
    def connect(self) -> bool:
        """
        Initialize connection to the platform.
        Returns True if successful.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the platform."""

    @abstractmethod
    def poll(self) -> List[Dict[str, Any]]:
        """
        Poll for new messages.

        Returns list of message dicts with at least:
        - chat_id: str
        - text: str (a button press arrives as its command text)
        - from_user: str (username or display name)
        - kind: "message" or "button"
        """

    @abstractmethod
    def send_message(self, chat_id: str, text: str, buttons: Optional[Buttons] = None) -> bool:
        """
        Send a message to a chat, with an optional inline keyboard.
        Returns True if successful.
        """

    @abstractmethod
    def send_document(self, chat_id: str, *, file_path: Path, filename: str = "", caption: str = "") -> bool:
        """Upload a file to a chat."""
