"""Services package exports."""

from expense_assistant.services.chat_service import ChatService
from expense_assistant.services.logging_service import configure_logging, get_logger

__all__ = [
    "ChatService",
    "configure_logging",
    "get_logger",
]
