"""
Chat platform adapters.

- Telegram: long-poll getUpdates over the Bot API
"""

from .base import IMAdapter
from .telegram import TelegramAdapter

__all__ = ["IMAdapter", "TelegramAdapter"]
