"""Response rendering: fixed templates per result kind, optional LLM rephrasing."""

import json
from datetime import datetime
from typing import Optional

import httpx
import structlog

from expense_assistant.config import Settings, get_settings
from expense_assistant.models.assistant import Intent
from expense_assistant.models.results import (
    ActionResult,
    AdviceResult,
    AssistantNameResult,
    BudgetSnapshot,
    CategoryComparisonResult,
    ErrorResult,
    ExpenseChangeResult,
    ForecastResult,
    ForecastUnavailableResult,
    GreetingResult,
    MonthComparisonResult,
    NoBudgetResult,
    OverspendingResult,
    SearchResult,
    SpikesResult,
    SuggestionsResult,
    SummaryResult,
    TopCategoriesResult,
)

logger = structlog.get_logger(__name__)

FALLBACK_TEXT = "Here to help with your expenses."
NO_BUDGET_TEXT = "You have not set a budget yet."
ASK_NAME_TEXT = "What name would you like to give me?"
MISSING_VALUE = "—"

REPHRASE_INSTRUCTIONS = (
    "Rewrite the given structured response in a concise, friendly tone.\n"
    "Stay factual; do not invent data."
)


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value else "?"


class ResponseRenderer:
    """Pure string templates over already-computed result fields."""

    def __init__(self, currency_symbol: Optional[str] = None):
        self.currency = currency_symbol if currency_symbol is not None else get_settings().currency_symbol

    def money(self, amount: Optional[float]) -> str:
        if amount is None:
            return MISSING_VALUE
        return f"{self.currency}{amount:.2f}"

    def _category_list(self, totals: dict[str, float], empty: str) -> str:
        ordered = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
        return ", ".join(f"{c} ({self.money(a)})" for c, a in ordered) or empty

    def greeting(self, result: GreetingResult) -> str:
        intro = f"Hey there, {result.assistant_name} here!" if result.assistant_name else "Hey there!"
        return (
            f"{intro} I can help with budgets, expenses, summaries, and category breakdowns. "
            'Try: "What is my monthly budget?" or "How much did I spend this month?"'
        )

    def budget(self, result: BudgetSnapshot) -> str:
        status = result.status.value if result.status else MISSING_VALUE
        lines = [
            f"Budget: {result.monthly_limit:.2f}",
            f"Spent: {result.current_spent:.2f}",
            f"Remaining: {result.remaining_budget:.2f}",
            f"Status: {status}",
        ]
        if result.action == "set":
            lines.insert(0, "Budget updated.")
        return "\n".join(lines)

    def no_budget(self, result: NoBudgetResult) -> str:
        return NO_BUDGET_TEXT

    def assistant_name(self, result: AssistantNameResult) -> str:
        return f"Got it — call me {result.assistant_name}."

    def expense_change(self, result: ExpenseChangeResult) -> str:
        expense = result.expense
        if result.action == "added":
            return f"Added expense: {expense.item} for {self.money(expense.amount)} ({expense.category.value})."
        if result.action == "updated":
            return f"Updated expense {expense.id}: {expense.item} for {self.money(expense.amount)}."
        return f"Deleted expense {expense.id} ({expense.item}, {self.money(expense.amount)})."

    def summary(self, result: SummaryResult) -> str:
        categories = self._category_list(result.by_category, "no categories")
        if result.scope == "range":
            return (
                f"From {_date(result.period.start)} to {_date(result.period.end)} you spent "
                f"{self.money(result.total)} across {result.count} expenses. "
                f"Top categories: {categories}."
            )
        return (
            f"You've spent {self.money(result.total)} during this period across {result.count} expenses.\n"
            f"Your top spending categories were {categories}.\n"
            "Would you like a daily breakdown or a comparison with last month?"
        )

    def category_comparison(self, result: CategoryComparisonResult) -> str:
        if not result.by_category:
            return "No category data yet."
        totals = ", ".join(f"{t.category}: {self.money(t.amount)}" for t in result.by_category)
        return f"Category totals: {totals}"

    def month_comparison(self, result: MonthComparisonResult) -> str:
        if result.delta > 0:
            direction = "more than"
        elif result.delta < 0:
            direction = "less than"
        else:
            direction = "the same as"
        pct = f" ({result.pct:+.1f}%)" if result.pct is not None else ""
        return (
            f"This month you spent {self.money(result.current.total)} and last month you spent "
            f"{self.money(result.previous.total)}. You spent {direction} last month. "
            f"Change: {self.money(result.delta)}{pct}."
        )

    def overspending(self, result: OverspendingResult) -> str:
        status_text = {
            "over": "You are over budget.",
            "danger": "You are very close to your budget.",
            "warning": "You are approaching your budget.",
            "safe": "You are within budget.",
        }[result.status]
        text = (
            f"{status_text} Limit: {self.money(result.monthly_limit)}. "
            f"Spent: {self.money(result.current_spent)}. "
            f"Remaining: {self.money(result.remaining)}."
        )
        if result.percent is not None:
            text += f" Used: {result.percent:.1f}%."
        return text

    def top_categories(self, result: TopCategoriesResult) -> str:
        if not result.categories:
            return "No category data yet."
        label = "Lowest categories" if result.direction == "asc" else "Top categories"
        lines = [
            f"{idx}) {t.category}: {self.money(t.amount)}"
            for idx, t in enumerate(result.categories, start=1)
        ]
        return f"{label}:\n" + "\n".join(lines)

    def search(self, result: SearchResult) -> str:
        if not result.total_count:
            return "No matching expenses found."
        lines = [
            f"{e.item} - {self.money(e.amount)} ({e.category.value}) on {_date(e.date)}"
            for e in result.sample
        ]
        return (
            f"Found {result.total_count} matching expenses. Recent matches:\n"
            + "\n".join(lines)
            + f"\nShown total: {self.money(result.sample_total)}"
        )

    def forecast(self, result: ForecastResult) -> str:
        return (
            f"Based on the last {result.days_considered} days, you spend about "
            f"{self.money(result.avg_per_day)} per day. You have {result.days_remaining} days left "
            f"in this month. Spent so far this month: {self.money(result.spent_this_month)}. "
            f"Projected month total: {self.money(result.projected_month_total)}."
        )

    def forecast_unavailable(self, result: ForecastUnavailableResult) -> str:
        return result.message

    def advice(self, result: AdviceResult) -> str:
        return result.text

    def spikes(self, result: SpikesResult) -> str:
        if not result.spikes:
            return "No unusual spending spikes this month compared to last month."
        lines = [
            f"{s.category}: {self.money(s.current)} vs {self.money(s.previous)} ({s.ratio:.1f}x)"
            for s in result.spikes
        ]
        return "Spending is up sharply in:\n" + "\n".join(lines)

    def suggestions(self, result: SuggestionsResult) -> str:
        lines = [f"- {s.title}: {s.description}" for s in result.suggestions]
        return f"In the last 30 days you spent {self.money(result.total_spend)}.\n" + "\n".join(lines)

    def error(self, result: ErrorResult) -> str:
        return f"Sorry, I couldn't do that: {result.message}"

    def render(
        self,
        intent: Intent,
        result: Optional[ActionResult] = None,
        clarification: Optional[str] = None,
    ) -> str:
        """Text for a turn. A clarification question always wins."""
        if clarification:
            return clarification

        match result:
            case None:
                if intent == Intent.SET_ASSISTANT_NAME:
                    return ASK_NAME_TEXT
                if intent in (Intent.GET_BUDGET, Intent.OVERSPENDING_CHECK):
                    return NO_BUDGET_TEXT
                return FALLBACK_TEXT
            case GreetingResult():
                return self.greeting(result)
            case BudgetSnapshot():
                return self.budget(result)
            case NoBudgetResult():
                return self.no_budget(result)
            case AssistantNameResult():
                return self.assistant_name(result)
            case ExpenseChangeResult():
                return self.expense_change(result)
            case SummaryResult():
                return self.summary(result)
            case CategoryComparisonResult():
                return self.category_comparison(result)
            case MonthComparisonResult():
                return self.month_comparison(result)
            case OverspendingResult():
                return self.overspending(result)
            case TopCategoriesResult():
                return self.top_categories(result)
            case SearchResult():
                return self.search(result)
            case ForecastResult():
                return self.forecast(result)
            case ForecastUnavailableResult():
                return self.forecast_unavailable(result)
            case AdviceResult():
                return self.advice(result)
            case SpikesResult():
                return self.spikes(result)
            case SuggestionsResult():
                return self.suggestions(result)
            case ErrorResult():
                return self.error(result)
            case _:
                logger.warning("renderer_missing", result_type=type(result).__name__)
                return FALLBACK_TEXT


def serialize_context(context: Optional[dict]) -> str:
    """One ``key: value`` line per entry; structured values as JSON."""
    if not context:
        return ""
    lines = []
    for key, value in context.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


class LanguageService:
    """Renders results and, when configured, asks an LLM for a tone-only rewrite.

    The rewrite is never required: on any failure, or when no model is
    configured, the templated text is returned unchanged.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        renderer: Optional[ResponseRenderer] = None,
    ):
        self.settings = settings or get_settings()
        self.renderer = renderer or ResponseRenderer(self.settings.currency_symbol)
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.llm_timeout_seconds)
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def build_prompt(self, base: str, context: Optional[dict] = None) -> str:
        context = context or {}
        parts = [REPHRASE_INSTRUCTIONS]
        if context.get("assistant_name"):
            parts.append(f"Assistant name: {context['assistant_name']}")
        parts.append(f"Structured response: {base}")
        context_text = serialize_context(context)
        if context_text:
            parts.append(f"Context:\n{context_text}")
        return "\n".join(parts)

    async def _generate(self, prompt: str) -> Optional[str]:
        """POST {model, prompt, stream: false} and read ``response``.

        Returns None on transport errors, non-2xx or an empty/malformed body.
        """
        headers = {}
        if self.settings.ollama_token:
            headers["Authorization"] = f"Bearer {self.settings.ollama_token}"

        client = await self._get_client()
        try:
            response = await client.post(
                self.settings.ollama_url,
                json={"model": self.settings.ollama_model, "prompt": prompt, "stream": False},
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            logger.warning("rephrase_timeout", timeout=self.settings.llm_timeout_seconds)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("rephrase_failed", error=str(e), error_type=type(e).__name__)
            return None

        if not isinstance(data, dict):
            return None
        text = data.get("response")
        if not text:
            choices = data.get("choices") or []
            if choices and isinstance(choices[0], dict):
                text = choices[0].get("text")
        return text.strip() if isinstance(text, str) and text.strip() else None

    async def to_natural_language(
        self,
        intent: Intent,
        result: Optional[ActionResult] = None,
        clarification: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> tuple[str, str]:
        """Render a turn's text.

        Returns:
            Tuple of (text, model_used) where model_used is "template" unless
            the rewrite succeeded
        """
        base = self.renderer.render(intent, result, clarification)
        if not self.settings.rephrasing_enabled:
            return base, "template"

        rewritten = await self._generate(self.build_prompt(base, context))
        if rewritten is None:
            return base, "template"
        return rewritten, self.settings.ollama_model
