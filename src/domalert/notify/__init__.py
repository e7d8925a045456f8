from .base import MessageChannel
from .dispatcher import AlertDispatcher
from .formatter import format_alert_message
from .telegram import TelegramChannel

__all__ = [
    "AlertDispatcher",
    "MessageChannel",
    "TelegramChannel",
    "format_alert_message",
]
