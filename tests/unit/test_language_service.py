"""Unit tests for templated rendering and optional rephrasing."""

from datetime import datetime, timezone
from typing import get_args
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import httpx
import pytest

from expense_assistant.config import Settings
from expense_assistant.models.assistant import Intent
from expense_assistant.models.finance import BudgetStatus, Expense, Period
from expense_assistant.models.results import (
    ActionResult,
    AdviceResult,
    AssistantNameResult,
    BudgetSnapshot,
    CategoryComparisonResult,
    CategoryTotal,
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
    Suggestion,
    SuggestionsResult,
    SummaryResult,
    TopCategoriesResult,
)
from expense_assistant.services.language_service import (
    ASK_NAME_TEXT,
    FALLBACK_TEXT,
    MISSING_VALUE,
    NO_BUDGET_TEXT,
    LanguageService,
    ResponseRenderer,
    serialize_context,
)

MAY = Period(
    start=datetime(2024, 5, 1, tzinfo=timezone.utc),
    end=datetime(2024, 6, 1, tzinfo=timezone.utc),
)


@pytest.fixture
def renderer():
    return ResponseRenderer("₹")


def summary(total, by_category=None, scope="month"):
    return SummaryResult(scope=scope, total=total, count=len(by_category or {}), by_category=by_category or {}, period=MAY)


def make_expense(**overrides):
    values = {
        "id": uuid4(),
        "user_id": "user-1",
        "item": "lunch",
        "amount": 120.0,
        "category": "lunch",
        "date": datetime(2024, 5, 3, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return Expense(**values)


def one_of_each_result():
    return [
        GreetingResult(assistant_name="Nova"),
        BudgetSnapshot(monthly_limit=100, current_spent=10, remaining_budget=90),
        NoBudgetResult(),
        AssistantNameResult(assistant_name="Nova"),
        ExpenseChangeResult(action="deleted", expense=make_expense()),
        summary(120, {"lunch": 120}),
        CategoryComparisonResult(by_category=[CategoryTotal(category="lunch", amount=120)]),
        MonthComparisonResult(current=summary(120), previous=summary(0), delta=120),
        OverspendingResult(status="safe", monthly_limit=100, current_spent=10, remaining=90, percent=10),
        TopCategoriesResult(categories=[CategoryTotal(category="lunch", amount=120)], period=MAY),
        SearchResult(total_count=1, sample=[make_expense()], sample_total=120),
        ForecastResult(avg_per_day=10, days_considered=3, days_remaining=5, spent_this_month=30, projected_month_total=80),
        ForecastUnavailableResult(),
        AdviceResult(tips=["Spend less on lunch."]),
        SpikesResult(threshold=1.25),
        SuggestionsResult(suggestions=[Suggestion(title="Daily average", description="About ₹10.00 per day.")]),
        ErrorResult(message="Invalid expense id"),
    ]


class TestRendererCoverage:
    def test_samples_cover_every_variant(self):
        variants = set(get_args(get_args(ActionResult)[0]))
        assert {type(result) for result in one_of_each_result()} == variants

    @pytest.mark.parametrize("result", one_of_each_result(), ids=lambda r: r.kind)
    def test_every_variant_has_its_own_template(self, renderer, result):
        assert renderer.render(Intent.UNKNOWN, result) != FALLBACK_TEXT

    def test_unknown_object_falls_back(self, renderer):
        assert renderer.render(Intent.UNKNOWN, object()) == FALLBACK_TEXT


class TestResponseRenderer:
    def test_clarification_wins(self, renderer):
        result = NoBudgetResult()
        assert renderer.render(Intent.GET_BUDGET, result, "Which month?") == "Which month?"

    def test_fallback_without_result(self, renderer):
        assert renderer.render(Intent.UNKNOWN) == FALLBACK_TEXT
        assert renderer.render(Intent.SET_ASSISTANT_NAME) == ASK_NAME_TEXT
        assert renderer.render(Intent.GET_BUDGET) == NO_BUDGET_TEXT
        assert renderer.render(Intent.OVERSPENDING_CHECK) == NO_BUDGET_TEXT

    def test_no_budget_text(self, renderer):
        assert renderer.render(Intent.GET_BUDGET, NoBudgetResult()) == "You have not set a budget yet."

    def test_budget_snapshot(self, renderer):
        result = BudgetSnapshot(
            monthly_limit=5000, current_spent=250, remaining_budget=4750, status=BudgetStatus.SAFE
        )
        assert renderer.render(Intent.GET_BUDGET, result) == (
            "Budget: 5000.00\nSpent: 250.00\nRemaining: 4750.00\nStatus: safe"
        )

    def test_budget_set_and_missing_status(self, renderer):
        result = BudgetSnapshot(action="set", monthly_limit=100, current_spent=0, remaining_budget=100)
        text = renderer.render(Intent.SET_BUDGET, result)
        assert text.startswith("Budget updated.\n")
        assert text.endswith(f"Status: {MISSING_VALUE}")

    def test_assistant_name(self, renderer):
        assert renderer.render(Intent.SET_ASSISTANT_NAME, AssistantNameResult(assistant_name="Nova")) == (
            "Got it — call me Nova."
        )

    def test_added_expense(self, renderer):
        result = ExpenseChangeResult(action="added", expense=make_expense())
        assert renderer.render(Intent.ADD_EXPENSE, result) == "Added expense: lunch for ₹120.00 (lunch)."

    def test_error(self, renderer):
        assert renderer.render(Intent.DELETE_EXPENSE, ErrorResult(message="Invalid expense id")) == (
            "Sorry, I couldn't do that: Invalid expense id"
        )

    def test_range_summary(self, renderer):
        text = renderer.render(Intent.CUSTOM_RANGE_SUMMARY, summary(400, {"travel": 300, "lunch": 100}, "range"))
        assert text.startswith("From 2024-05-01 to 2024-06-01 you spent ₹400.00")
        assert "travel (₹300.00), lunch (₹100.00)" in text

    def test_month_comparison_percentage(self, renderer):
        result = MonthComparisonResult(current=summary(400), previous=summary(50), delta=350, pct=700.0)
        text = renderer.render(Intent.MONTHLY_COMPARISON, result)
        assert "more than" in text
        assert "(+700.0%)" in text

    def test_month_comparison_without_previous(self, renderer):
        result = MonthComparisonResult(current=summary(100), previous=summary(0), delta=100, pct=None)
        assert "%" not in renderer.render(Intent.MONTHLY_COMPARISON, result)

    def test_search_lists_sample(self, renderer):
        result = SearchResult(total_count=12, sample=[make_expense(item="coffee", amount=80)], sample_total=80)
        text = renderer.render(Intent.SEARCH_FILTER, result)
        assert text.startswith("Found 12 matching expenses.")
        assert "coffee - ₹80.00 (lunch) on 2024-05-03" in text
        assert text.endswith("Shown total: ₹80.00")

    def test_advice_joins_tips(self, renderer):
        result = AdviceResult(tips=["One.", "Two."])
        assert renderer.render(Intent.ADVICE, result) == "One. Two."

    def test_money_missing_value(self, renderer):
        assert renderer.money(None) == MISSING_VALUE


def test_serialize_context():
    text = serialize_context({"assistant_name": "Nova", "result": {"total": 1}})
    assert text == 'assistant_name: Nova\nresult: {"total": 1}'
    assert serialize_context(None) == ""


def rephrasing_settings(**overrides) -> Settings:
    values = {
        "ollama_url": "http://llm.test/api/generate",
        "ollama_model": "llama3",
        "ollama_token": "",
    }
    values.update(overrides)
    return Settings(**values)


def mock_client(json_body=None, error=None):
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json = MagicMock(return_value=json_body)
    client = MagicMock()
    client.is_closed = False
    client.post = AsyncMock(side_effect=error) if error else AsyncMock(return_value=response)
    return client


class TestLanguageService:
    @pytest.mark.asyncio
    async def test_disabled_returns_template(self):
        service = LanguageService(Settings(ollama_url="", ollama_model=""))
        service._get_client = AsyncMock()

        text, model_used = await service.to_natural_language(Intent.GET_BUDGET, NoBudgetResult())

        assert text == NO_BUDGET_TEXT
        assert model_used == "template"
        service._get_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_successful_rewrite(self):
        service = LanguageService(rephrasing_settings(ollama_token="secret"))
        service._client = mock_client({"response": "  You haven't set a budget yet!  "})

        text, model_used = await service.to_natural_language(
            Intent.GET_BUDGET, NoBudgetResult(), context={"assistant_name": "Nova"}
        )

        assert text == "You haven't set a budget yet!"
        assert model_used == "llama3"
        call = service._client.post.call_args
        assert call[0][0] == "http://llm.test/api/generate"
        assert call[1]["json"]["stream"] is False
        assert call[1]["json"]["model"] == "llama3"
        assert "Assistant name: Nova" in call[1]["json"]["prompt"]
        assert call[1]["headers"] == {"Authorization": "Bearer secret"}

    @pytest.mark.asyncio
    async def test_choices_shape_is_accepted(self):
        service = LanguageService(rephrasing_settings())
        service._client = mock_client({"choices": [{"text": "Hi!"}]})

        text, _ = await service.to_natural_language(Intent.GREETING, GreetingResult())

        assert text == "Hi!"
        assert service._client.post.call_args[1]["headers"] == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "client",
        [
            mock_client(error=httpx.ReadTimeout("slow")),
            mock_client(error=httpx.ConnectError("refused")),
            mock_client({"response": ""}),
            mock_client(["not", "a", "dict"]),
        ],
    )
    async def test_failures_fall_back_to_template(self, client):
        service = LanguageService(rephrasing_settings())
        service._client = client

        text, model_used = await service.to_natural_language(Intent.GET_BUDGET, NoBudgetResult())

        assert text == NO_BUDGET_TEXT
        assert model_used == "template"

    def test_prompt_contains_instructions(self):
        service = LanguageService(rephrasing_settings())
        prompt = service.build_prompt("Budget: 5.00", {"intent": "GET_BUDGET"})
        assert "Stay factual; do not invent data." in prompt
        assert "Structured response: Budget: 5.00" in prompt
        assert "Context:\nintent: GET_BUDGET" in prompt
