"""Financial actions over one user's expenses and budget."""

import calendar
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Literal, Optional
from uuid import UUID

import structlog

from expense_assistant.models.finance import (
    Budget,
    Expense,
    ExpenseCategory,
    ExpenseFilters,
    Period,
)
from expense_assistant.models.results import (
    AdviceResult,
    AssistantNameResult,
    BudgetSnapshot,
    CategoryComparisonResult,
    CategorySpike,
    CategoryTotal,
    ExpenseChangeResult,
    ForecastResult,
    ForecastUnavailableResult,
    MonthComparisonResult,
    NoBudgetResult,
    OverspendingResult,
    SearchResult,
    SpikesResult,
    Suggestion,
    SuggestionsResult,
    SummaryResult,
    TopCategoriesResult,
)
from expense_assistant.services.finance_store import BudgetStore, ExpenseStore, PreferenceStore
from expense_assistant.services.query_parser import month_bounds

logger = structlog.get_logger(__name__)

DEFAULT_WINDOW_DAYS = 30
SEARCH_SAMPLE_SIZE = 10
SPIKE_THRESHOLD = 1.25
# Stand-in for a zero previous-month total when computing spike ratios
ZERO_PREVIOUS_SPEND = 0.001
MAX_ASSISTANT_NAME_LENGTH = 50


class ActionError(Exception):
    """Base class for failures raised by financial actions."""


class ActionValidationError(ActionError, ValueError):
    """Missing or malformed input (amount, id format, empty name)."""


class ExpenseNotFoundError(ActionError, LookupError):
    """The expense does not exist or belongs to another user."""


def _parse_expense_id(expense_id) -> UUID:
    if isinstance(expense_id, UUID):
        return expense_id
    try:
        return UUID(str(expense_id))
    except (TypeError, ValueError):
        raise ActionValidationError("Invalid expense id")


def _parse_amount(value, message: str) -> float:
    if value is None or isinstance(value, bool):
        raise ActionValidationError(message)
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ActionValidationError(message)
    if amount != amount or amount < 0:
        raise ActionValidationError(message)
    return amount


def _parse_category(value) -> ExpenseCategory:
    if value is None or value == "":
        return ExpenseCategory.OTHER
    try:
        return ExpenseCategory(value)
    except ValueError:
        raise ActionValidationError(f"Unknown category: {value}")


def category_totals(expenses: Iterable[Expense]) -> dict[str, float]:
    """Sum of amounts per category value."""
    totals: dict[str, float] = defaultdict(float)
    for expense in expenses:
        totals[expense.category.value] += expense.amount
    return dict(totals)


def _sorted_totals(totals: dict[str, float], descending: bool = True) -> list[CategoryTotal]:
    ordered = sorted(totals.items(), key=lambda kv: kv[1], reverse=descending)
    return [CategoryTotal(category=category, amount=amount) for category, amount in ordered]


def _budget_snapshot(budget: Budget, action: Literal["get", "set"]) -> BudgetSnapshot:
    return BudgetSnapshot(
        action=action,
        monthly_limit=budget.monthly_limit,
        current_spent=budget.current_spent,
        remaining_budget=budget.remaining_budget,
        status=budget.status,
    )


class FinanceActionService:
    """Independent, user-scoped operations over expense and budget records.

    Stores are injectable so the same operations run against Postgres or any
    object exposing the same async methods.
    """

    def __init__(
        self,
        budgets: Optional[BudgetStore] = None,
        expenses: Optional[ExpenseStore] = None,
        preferences: Optional[PreferenceStore] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.budgets = budgets or BudgetStore()
        self.expenses = expenses or ExpenseStore()
        self.preferences = preferences or PreferenceStore()
        self._now = now or (lambda: datetime.now(timezone.utc))

    # Budget

    async def set_budget(self, user_id: str, amount) -> BudgetSnapshot:
        """Set the monthly limit, keeping whatever has already been spent."""
        monthly_limit = _parse_amount(amount, "Budget amount is required")
        if monthly_limit == 0:
            raise ActionValidationError("Budget amount is required")
        budget = await self.budgets.set_limit(user_id, monthly_limit)
        logger.info("budget_set", user_id=user_id, monthly_limit=monthly_limit)
        return _budget_snapshot(budget, "set")

    async def get_budget(self, user_id: str) -> BudgetSnapshot | NoBudgetResult:
        budget = await self.budgets.get(user_id)
        if budget is None or budget.monthly_limit <= 0:
            return NoBudgetResult()
        return _budget_snapshot(budget, "get")

    async def get_overspending_status(self, user_id: str) -> OverspendingResult | NoBudgetResult:
        """Spend against the limit: over >= 100%, danger >= 90%, warning >= 75%."""
        budget = await self.budgets.get(user_id)
        if budget is None or budget.monthly_limit <= 0:
            return NoBudgetResult()

        percent = budget.current_spent / budget.monthly_limit * 100
        if percent >= 100:
            status = "over"
        elif percent >= 90:
            status = "danger"
        elif percent >= 75:
            status = "warning"
        else:
            status = "safe"

        return OverspendingResult(
            status=status,
            monthly_limit=budget.monthly_limit,
            current_spent=budget.current_spent,
            remaining=budget.remaining_budget,
            percent=percent,
        )

    # Preferences

    async def set_assistant_name(self, user_id: str, name: Optional[str]) -> AssistantNameResult:
        if not user_id:
            raise ActionValidationError("User is required")
        cleaned = (name or "").strip()
        if not cleaned:
            raise ActionValidationError("Assistant name is required")
        if len(cleaned) > MAX_ASSISTANT_NAME_LENGTH:
            raise ActionValidationError("Assistant name is too long")
        await self.preferences.set_assistant_name(user_id, cleaned)
        return AssistantNameResult(assistant_name=cleaned)

    async def get_assistant_name(self, user_id: str) -> Optional[str]:
        return await self.preferences.get_assistant_name(user_id)

    # Expense writes

    async def add_expense(self, user_id: str, payload: dict) -> ExpenseChangeResult:
        """Persist an expense and add its amount to the budget's spent total."""
        item = (payload.get("item") or "").strip()
        if not item or payload.get("amount") is None:
            raise ActionValidationError("item and amount are required")
        amount = _parse_amount(payload.get("amount"), "item and amount are required")
        category = _parse_category(payload.get("category"))

        expense = await self.expenses.create(
            user_id,
            item=item,
            amount=amount,
            category=category.value,
            description=payload.get("description") or "",
            tags=list(payload.get("tags") or []),
            date=payload.get("date") or self._now(),
        )
        await self.budgets.increment_spent(user_id, expense.amount, upsert=True)

        logger.info(
            "expense_added",
            user_id=user_id,
            expense_id=str(expense.id),
            amount=expense.amount,
            category=expense.category.value,
        )
        return ExpenseChangeResult(action="added", expense=expense)

    async def update_expense(self, user_id: str, expense_id, updates: dict) -> ExpenseChangeResult:
        """Find-then-save update; an amount change moves the budget by the difference."""
        uid = _parse_expense_id(expense_id)
        existing = await self.expenses.get(user_id, uid)
        if existing is None:
            raise ExpenseNotFoundError("Expense not found")

        changes = dict(updates)
        if "amount" in changes:
            changes["amount"] = _parse_amount(changes["amount"], "Amount must be a non-negative number")
        if "category" in changes:
            changes["category"] = _parse_category(changes["category"]).value
        if "item" in changes and not (changes["item"] or "").strip():
            raise ActionValidationError("item cannot be empty")

        updated = await self.expenses.update(user_id, uid, changes)
        if updated is None:
            raise ExpenseNotFoundError("Expense not found")

        delta = updated.amount - existing.amount
        if delta:
            await self.budgets.increment_spent(user_id, delta, upsert=False)

        logger.info("expense_updated", user_id=user_id, expense_id=str(uid), fields=sorted(changes))
        return ExpenseChangeResult(action="updated", expense=updated)

    async def delete_expense(self, user_id: str, expense_id) -> ExpenseChangeResult:
        uid = _parse_expense_id(expense_id)
        deleted = await self.expenses.delete(user_id, uid)
        if deleted is None:
            raise ExpenseNotFoundError("Expense not found")
        await self.budgets.increment_spent(user_id, -deleted.amount, upsert=False)
        logger.info("expense_deleted", user_id=user_id, expense_id=str(uid), amount=deleted.amount)
        return ExpenseChangeResult(action="deleted", expense=deleted)

    # Reads

    async def _summarize(
        self, user_id: str, period: Period, scope: Literal["month", "range"]
    ) -> SummaryResult:
        expenses = await self.expenses.find(
            user_id, ExpenseFilters(start=period.start, end=period.end)
        )
        return SummaryResult(
            scope=scope,
            total=sum(e.amount for e in expenses),
            count=len(expenses),
            by_category=category_totals(expenses),
            period=period,
        )

    async def get_monthly_summary(self, user_id: str, month_offset: int = 0) -> SummaryResult:
        """Totals for the calendar month ``month_offset`` months from now."""
        return await self._summarize(user_id, month_bounds(self._now(), month_offset), "month")

    def resolve_range(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Period:
        """Fill a missing end (or both) with a 30-day window."""
        window = timedelta(days=DEFAULT_WINDOW_DAYS)
        if start is None and end is None:
            end = self._now()
            start = end - window
        elif start is None:
            start = end - window
        elif end is None:
            end = start + window
        return Period(start=start, end=end)

    async def get_summary_by_range(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SummaryResult:
        return await self._summarize(user_id, self.resolve_range(start, end), "range")

    async def get_category_comparison(self, user_id: str) -> CategoryComparisonResult:
        """All-time totals per category, largest first."""
        expenses = await self.expenses.find(user_id)
        return CategoryComparisonResult(by_category=_sorted_totals(category_totals(expenses)))

    async def compare_months(
        self, user_id: str, offset_a: int = 0, offset_b: int = -1
    ) -> MonthComparisonResult:
        current = await self.get_monthly_summary(user_id, offset_a)
        previous = await self.get_monthly_summary(user_id, offset_b)
        delta = current.total - previous.total
        pct = delta / previous.total * 100 if previous.total else None
        return MonthComparisonResult(current=current, previous=previous, delta=delta, pct=pct)

    async def detect_spikes(self, user_id: str, threshold: float = SPIKE_THRESHOLD) -> SpikesResult:
        """Categories whose spend this month is at least ``threshold`` times last month's."""
        this_month = await self.get_monthly_summary(user_id, 0)
        last_month = await self.get_monthly_summary(user_id, -1)

        spikes = []
        for category, amount in this_month.by_category.items():
            previous = last_month.by_category.get(category) or ZERO_PREVIOUS_SPEND
            ratio = amount / previous
            if ratio >= threshold:
                spikes.append(
                    CategorySpike(category=category, current=amount, previous=previous, ratio=ratio)
                )
        spikes.sort(key=lambda spike: spike.ratio, reverse=True)
        return SpikesResult(threshold=threshold, spikes=spikes)

    async def get_top_categories(
        self,
        user_id: str,
        top_n: int = 3,
        direction: Literal["asc", "desc"] = "desc",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> TopCategoriesResult:
        period = self.resolve_range(start, end)
        expenses = await self.expenses.find(
            user_id, ExpenseFilters(start=period.start, end=period.end)
        )
        ranked = _sorted_totals(category_totals(expenses), descending=direction != "asc")
        return TopCategoriesResult(
            direction=direction,
            categories=ranked[: max(top_n, 0)],
            period=period,
        )

    async def search_expenses(self, user_id: str, filters: ExpenseFilters) -> SearchResult:
        """Up to SEARCH_SAMPLE_SIZE matching rows plus the full match count.

        ``sample_total`` sums the returned rows only.
        """
        sample = await self.expenses.find(user_id, filters, limit=SEARCH_SAMPLE_SIZE)
        total_count = await self.expenses.count(user_id, filters)
        return SearchResult(
            total_count=total_count,
            sample=sample,
            sample_total=sum(e.amount for e in sample),
            filters=filters,
        )

    async def forecast_spend(self, user_id: str) -> ForecastResult | ForecastUnavailableResult:
        """Project this month's total from the trailing 30-day daily average.

        The average divides by the days elapsed since the oldest expense in the
        window (at least 1, at most 30).
        """
        now = self._now()
        window = self.resolve_range(None, now)
        recent = await self.expenses.find(
            user_id, ExpenseFilters(start=window.start, end=window.end)
        )
        if not recent:
            return ForecastUnavailableResult()

        oldest = min(e.date for e in recent)
        days_considered = max(1, min(DEFAULT_WINDOW_DAYS, (now - oldest).days + 1))
        avg_per_day = sum(e.amount for e in recent) / days_considered

        this_month = await self.get_monthly_summary(user_id, 0)
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        days_remaining = days_in_month - now.day

        return ForecastResult(
            avg_per_day=avg_per_day,
            days_considered=days_considered,
            days_remaining=days_remaining,
            spent_this_month=this_month.total,
            projected_month_total=this_month.total + avg_per_day * days_remaining,
        )

    async def advice(self, user_id: str) -> AdviceResult:
        """One to three sentences built from budget status and the top category."""
        tips = []
        status = await self.get_overspending_status(user_id)
        if isinstance(status, OverspendingResult):
            if status.status == "over":
                tips.append(
                    f"You are over your monthly budget by {abs(status.remaining):.2f}; "
                    "pause non-essential purchases until the month resets."
                )
            elif status.status in ("danger", "warning"):
                tips.append(
                    f"You have used {status.percent:.0f}% of your budget; "
                    f"keep the remaining {status.remaining:.2f} for essentials."
                )
            else:
                tips.append("You are comfortably within budget, nice work.")
        else:
            tips.append("Set a monthly budget so I can warn you before you overspend.")

        top = await self.get_top_categories(user_id, top_n=1)
        if top.categories:
            leader = top.categories[0]
            tips.append(
                f"{leader.category.capitalize()} is your biggest category lately "
                f"({leader.amount:.2f}); a weekly cap there would have the most impact."
            )

        if not top.categories and not isinstance(status, OverspendingResult):
            tips = ["Track a few more expenses and set a monthly budget so I can give tailored tips."]

        return AdviceResult(tips=tips[:3])

    async def suggestions(self, user_id: str) -> SuggestionsResult:
        """Top category, peak day and daily average over the trailing 30 days."""
        window = self.resolve_range()
        expenses = await self.expenses.find(
            user_id, ExpenseFilters(start=window.start, end=window.end)
        )
        total_spend = sum(e.amount for e in expenses)

        by_day: dict[str, float] = defaultdict(float)
        for expense in expenses:
            by_day[expense.date.date().isoformat()] += expense.amount
        active_days = len(by_day) or 1
        avg_per_day = total_spend / active_days

        suggestions = []
        totals = _sorted_totals(category_totals(expenses))
        if totals:
            top = totals[0]
            suggestions.append(
                Suggestion(
                    title="Top spending category",
                    description=(
                        f"You spent the most on {top.category} ({top.amount:.2f}) in the last "
                        f"{DEFAULT_WINDOW_DAYS} days. Set a weekly cap for this category to control it."
                    ),
                )
            )
        if by_day:
            peak_day, peak_amount = max(by_day.items(), key=lambda kv: kv[1])
            suggestions.append(
                Suggestion(
                    title="Peak spending day",
                    description=(
                        f"Your highest daily spend was on {peak_day} ({peak_amount:.2f}). "
                        "Plan ahead for days like that to reduce spikes."
                    ),
                )
            )
        suggestions.append(
            Suggestion(
                title="Daily average",
                description=(
                    f"You spend an average of {avg_per_day:.2f} on active days. "
                    "Try a daily limit slightly below this to nudge savings."
                ),
            )
        )
        return SuggestionsResult(total_spend=total_spend, suggestions=suggestions)
