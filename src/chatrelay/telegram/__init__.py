"""Telegram-specific clients and payload models."""

from .api_models import Message, Update, decode_update
from .client import BotClient, TelegramClient, TelegramRetryAfter

__all__ = [
    "BotClient",
    "Message",
    "TelegramClient",
    "TelegramRetryAfter",
    "Update",
    "decode_update",
]
