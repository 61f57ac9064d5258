"""Chat and feedback request models with validation."""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from expense_assistant.models.finance import ExpenseCategory


class ExpenseHint(BaseModel):
    """Structured hint sent alongside a message for expense and naming intents.

    Attributes:
        id: Target expense for update/delete
        item, amount, category, description, tags, date: Expense fields
        assistant_name: Name for SET_ASSISTANT_NAME turns
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    item: Optional[str] = Field(default=None, max_length=100)
    amount: Optional[float] = Field(default=None, ge=0)
    category: Optional[ExpenseCategory] = None
    description: Optional[str] = Field(default=None, max_length=200)
    tags: Optional[list[str]] = None
    date: Optional[datetime] = None
    assistant_name: Optional[str] = Field(default=None, max_length=50)

    def expense_fields(self) -> dict:
        """Expense columns explicitly provided by the caller."""
        return self.model_dump(exclude_unset=True, exclude={"id", "assistant_name"})


class ChatTurnRequest(BaseModel):
    """Incoming chat turn. The user id comes from the bearer token."""

    message: str = Field(max_length=2000)
    expense: Optional[ExpenseHint] = None

    @field_validator("message")
    @classmethod
    def message_not_empty(cls, v: str) -> str:
        """Strip whitespace and reject empty messages."""
        v = v.strip()
        if not v:
            raise ValueError("Message is required")
        return v


class FeedbackRequest(BaseModel):
    """User rating of a past interaction."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    interaction_id: UUID
    rating: Literal[-1, 0, 1]
    correction: str = Field(default="", max_length=1000)
    pattern_id: Optional[str] = None
