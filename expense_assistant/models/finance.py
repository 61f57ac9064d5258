"""Expense and budget models consumed by the assistant."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class ExpenseCategory(str, Enum):
    """Categories an expense can be filed under."""

    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    SNACKS = "snacks"
    DRINKS = "drinks"
    GROCERIES = "groceries"
    TRAVEL = "travel"
    SHOPPING = "shopping"
    RENT = "rent"
    UTILITIES = "utilities"
    ENTERTAINMENT = "entertainment"
    OTHER = "other"


class BudgetStatus(str, Enum):
    """Budget health by spend percentage (thresholds 50/80/100)."""

    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"
    EXCEEDED = "exceeded"


class Expense(BaseModel):
    """A single logged expense."""

    id: UUID
    user_id: str
    item: str
    amount: float = Field(ge=0)
    category: ExpenseCategory = ExpenseCategory.OTHER
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    date: datetime


class Budget(BaseModel):
    """A user's monthly budget record."""

    user_id: str
    monthly_limit: float = 0.0
    current_spent: float = 0.0

    @property
    def remaining_budget(self) -> float:
        return self.monthly_limit - self.current_spent

    @property
    def spending_percentage(self) -> Optional[float]:
        """Percent of the limit already spent, None when no limit is set."""
        if self.monthly_limit <= 0:
            return None
        return self.current_spent / self.monthly_limit * 100

    @property
    def status(self) -> BudgetStatus:
        percentage = self.spending_percentage
        if percentage is None:
            return BudgetStatus.EXCEEDED if self.current_spent > 0 else BudgetStatus.SAFE
        if percentage < 50:
            return BudgetStatus.SAFE
        if percentage < 80:
            return BudgetStatus.WARNING
        if percentage < 100:
            return BudgetStatus.DANGER
        return BudgetStatus.EXCEEDED


class Period(BaseModel):
    """Half-open time window [start, end)."""

    start: datetime
    end: datetime


class ExpenseFilters(BaseModel):
    """Optional filters extracted from a message or passed by a caller."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    category: Optional[ExpenseCategory] = None
    keyword: Optional[str] = None
