"""Models package exports."""

from expense_assistant.models.assistant import (
    Feedback,
    Intent,
    Interaction,
    InteractionMetadata,
    MatchMethod,
    Pattern,
    PatternMatch,
)
from expense_assistant.models.finance import (
    Budget,
    BudgetStatus,
    Expense,
    ExpenseCategory,
    ExpenseFilters,
    Period,
)
from expense_assistant.models.request import ChatTurnRequest, ExpenseHint, FeedbackRequest
from expense_assistant.models.response import ChatTurnResponse, ErrorResponse, FeedbackResponse

__all__ = [
    "Budget",
    "BudgetStatus",
    "ChatTurnRequest",
    "ChatTurnResponse",
    "ErrorResponse",
    "Expense",
    "ExpenseCategory",
    "ExpenseFilters",
    "ExpenseHint",
    "Feedback",
    "FeedbackRequest",
    "FeedbackResponse",
    "Intent",
    "Interaction",
    "InteractionMetadata",
    "MatchMethod",
    "Pattern",
    "PatternMatch",
    "Period",
]
