"""API package exports."""

from expense_assistant.api.middleware import CorrelationIdMiddleware
from expense_assistant.api.routes import router

__all__ = ["router", "CorrelationIdMiddleware"]
