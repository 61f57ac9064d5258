"""Action results, one variant per shape, discriminated by ``kind``."""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from expense_assistant.models.finance import BudgetStatus, Expense, ExpenseFilters, Period


class CategoryTotal(BaseModel):
    category: str
    amount: float


class GreetingResult(BaseModel):
    kind: Literal["greeting"] = "greeting"
    assistant_name: Optional[str] = None


class BudgetSnapshot(BaseModel):
    """Current budget figures (``get`` and ``set`` share the shape)."""

    kind: Literal["budget"] = "budget"
    action: Literal["get", "set"] = "get"
    monthly_limit: float
    current_spent: float
    remaining_budget: float
    status: Optional[BudgetStatus] = None


class NoBudgetResult(BaseModel):
    kind: Literal["no_budget"] = "no_budget"
    message: str = "No budget set yet."


class AssistantNameResult(BaseModel):
    kind: Literal["assistant_name"] = "assistant_name"
    assistant_name: str


class ExpenseChangeResult(BaseModel):
    kind: Literal["expense_change"] = "expense_change"
    action: Literal["added", "updated", "deleted"]
    expense: Expense


class SummaryResult(BaseModel):
    kind: Literal["summary"] = "summary"
    scope: Literal["month", "range"] = "month"
    total: float = 0.0
    count: int = 0
    by_category: dict[str, float] = Field(default_factory=dict)
    period: Period


class CategoryComparisonResult(BaseModel):
    kind: Literal["category_comparison"] = "category_comparison"
    by_category: list[CategoryTotal] = Field(default_factory=list)


class MonthComparisonResult(BaseModel):
    """``delta`` is current minus previous; ``pct`` is None when previous is zero."""

    kind: Literal["month_comparison"] = "month_comparison"
    current: SummaryResult
    previous: SummaryResult
    delta: float
    pct: Optional[float] = None


class OverspendingResult(BaseModel):
    kind: Literal["overspending"] = "overspending"
    status: Literal["safe", "warning", "danger", "over"]
    monthly_limit: float
    current_spent: float
    remaining: float
    percent: Optional[float] = None


class TopCategoriesResult(BaseModel):
    kind: Literal["top_categories"] = "top_categories"
    direction: Literal["asc", "desc"] = "desc"
    categories: list[CategoryTotal] = Field(default_factory=list)
    period: Period


class SearchResult(BaseModel):
    """A bounded sample of matching expenses.

    ``sample_total`` sums only the returned ``sample`` rows, while
    ``total_count`` counts every match.
    """

    kind: Literal["search"] = "search"
    total_count: int = 0
    sample: list[Expense] = Field(default_factory=list)
    sample_total: float = 0.0
    filters: ExpenseFilters = Field(default_factory=ExpenseFilters)


class ForecastResult(BaseModel):
    kind: Literal["forecast"] = "forecast"
    avg_per_day: float
    days_considered: int
    days_remaining: int
    spent_this_month: float
    projected_month_total: float


class ForecastUnavailableResult(BaseModel):
    kind: Literal["forecast_unavailable"] = "forecast_unavailable"
    message: str = "Not enough data to forecast."


class AdviceResult(BaseModel):
    kind: Literal["advice"] = "advice"
    tips: list[str] = Field(min_length=1)

    @property
    def text(self) -> str:
        return " ".join(self.tips)


class CategorySpike(BaseModel):
    category: str
    current: float
    previous: float
    ratio: float


class SpikesResult(BaseModel):
    kind: Literal["spikes"] = "spikes"
    threshold: float
    spikes: list[CategorySpike] = Field(default_factory=list)


class Suggestion(BaseModel):
    title: str
    description: str


class SuggestionsResult(BaseModel):
    kind: Literal["suggestions"] = "suggestions"
    total_spend: float = 0.0
    suggestions: list[Suggestion] = Field(default_factory=list)


class ErrorResult(BaseModel):
    kind: Literal["error"] = "error"
    message: str


ActionResult = Annotated[
    Union[
        GreetingResult,
        BudgetSnapshot,
        NoBudgetResult,
        AssistantNameResult,
        ExpenseChangeResult,
        SummaryResult,
        CategoryComparisonResult,
        MonthComparisonResult,
        OverspendingResult,
        TopCategoriesResult,
        SearchResult,
        ForecastResult,
        ForecastUnavailableResult,
        AdviceResult,
        SpikesResult,
        SuggestionsResult,
        ErrorResult,
    ],
    Field(discriminator="kind"),
]
