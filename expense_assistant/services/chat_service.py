"""Chat orchestration: classify, match, dispatch, render, record."""

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from expense_assistant.config import get_settings
from expense_assistant.models.assistant import (
    Intent,
    Interaction,
    InteractionMetadata,
    MatchMethod,
    PatternMatch,
)
from expense_assistant.models.finance import ExpenseCategory
from expense_assistant.models.request import ChatTurnRequest, ExpenseHint
from expense_assistant.models.response import ChatTurnResponse
from expense_assistant.models.results import ActionResult, ErrorResult, GreetingResult
from expense_assistant.services import query_parser
from expense_assistant.services.action_service import ActionError, FinanceActionService
from expense_assistant.services.intent_service import IntentFeatures, classify_intent
from expense_assistant.services.knowledge_service import KnowledgeService
from expense_assistant.services.language_service import ASK_NAME_TEXT, LanguageService
from expense_assistant.services.learning_service import LearningService
from expense_assistant.services.pattern_service import PatternService

logger = structlog.get_logger(__name__)

UNEXPECTED_ERROR_TEXT = "Something went wrong while handling that request."

# Patterns specific enough to override the broad SHOW_SUMMARY label
SPECIALIZED_PATTERNS = {
    Intent.MONTHLY_COMPARISON.value,
    Intent.OVERSPENDING_CHECK.value,
    Intent.TOP_CATEGORY.value,
    Intent.SEARCH_FILTER.value,
    Intent.FORECAST.value,
    Intent.ADVICE.value,
    Intent.CATEGORY_ANALYSIS.value,
    Intent.SPENDING_SPIKES.value,
    "SPENDING_SUGGESTIONS",
}

# Handlers a stored pattern may route to without a matching branch
READ_ONLY_HANDLERS = {
    "greeting",
    "summary",
    "range_summary",
    "comparison",
    "overspending",
    "top_category",
    "search",
    "forecast",
    "advice",
    "category",
    "spikes",
    "suggestions",
}

# Intents a bare name reply may carry when answering "what name would you like to give me?"
NAME_REPLY_INTENTS = {Intent.UNKNOWN, Intent.GENERAL_QUESTION, Intent.SET_ASSISTANT_NAME}

DIGIT_PATTERN = re.compile(r"\d")

INTENT_VALUES = {intent.value for intent in Intent}


@dataclass
class TurnContext:
    """Everything a branch may read about the current turn."""

    user_id: str
    text: str
    intent: Intent
    match: PatternMatch
    accepted_pattern: Optional[str]
    hint: Optional[ExpenseHint]
    last_interaction: Optional[Interaction]
    now: datetime
    features: IntentFeatures = field(init=False)

    def __post_init__(self):
        self.features = IntentFeatures(self.text)

    @property
    def specialized_pattern(self) -> Optional[str]:
        if self.accepted_pattern in SPECIALIZED_PATTERNS:
            return self.accepted_pattern
        return None

    @property
    def broad_summary(self) -> bool:
        """SHOW_SUMMARY that no comparison cue or specialized pattern refines."""
        return (
            self.intent == Intent.SHOW_SUMMARY
            and not self.features.has_comparison
            and self.specialized_pattern is None
        )

    @property
    def awaiting_name(self) -> bool:
        """The previous turn asked for a name and did not get one."""
        last = self.last_interaction
        return (
            last is not None
            and last.intent == Intent.SET_ASSISTANT_NAME.value
            and not last.success
        )


@dataclass
class BranchOutcome:
    """What a branch produced for the turn."""

    result: Optional[ActionResult] = None
    success: bool = False
    clarification: Optional[str] = None


@dataclass
class Branch:
    """One entry of the priority table.

    Matches when the classified intent is in ``intents``, the accepted pattern
    id is in ``pattern_ids``, or ``when`` returns True.
    """

    name: str
    handler: str
    label: Intent
    intents: tuple = ()
    pattern_ids: tuple = ()
    when: Optional[Callable[[TurnContext], bool]] = None

    def matches(self, ctx: TurnContext) -> bool:
        if ctx.intent in self.intents:
            return True
        if ctx.accepted_pattern is not None and ctx.accepted_pattern in self.pattern_ids:
            return True
        return bool(self.when and self.when(ctx))


def _name_follow_up(ctx: TurnContext) -> bool:
    return (
        ctx.awaiting_name
        and ctx.intent in NAME_REPLY_INTENTS
        and query_parser.parse_name_reply(ctx.text) is not None
    )


def _range_summary_requested(ctx: TurnContext) -> bool:
    return ctx.broad_summary and query_parser.has_explicit_range(ctx.text, ctx.now)


def _month_comparison_requested(ctx: TurnContext) -> bool:
    return ctx.intent == Intent.SHOW_SUMMARY and ctx.features.has_comparison


# Checked in order; the first match handles the turn.
BRANCHES = [
    Branch("greeting", "greeting", Intent.GREETING, pattern_ids=(Intent.GREETING.value,)),
    Branch("set_budget", "set_budget", Intent.SET_BUDGET, intents=(Intent.SET_BUDGET,)),
    Branch("get_budget", "get_budget", Intent.GET_BUDGET, intents=(Intent.GET_BUDGET,)),
    Branch(
        "set_name",
        "set_name",
        Intent.SET_ASSISTANT_NAME,
        intents=(Intent.SET_ASSISTANT_NAME,),
        when=_name_follow_up,
    ),
    Branch("add_expense", "add_expense", Intent.ADD_EXPENSE, intents=(Intent.ADD_EXPENSE,)),
    Branch("update_expense", "update_expense", Intent.UPDATE_EXPENSE, intents=(Intent.UPDATE_EXPENSE,)),
    Branch("delete_expense", "delete_expense", Intent.DELETE_EXPENSE, intents=(Intent.DELETE_EXPENSE,)),
    Branch(
        "range_summary",
        "range_summary",
        Intent.CUSTOM_RANGE_SUMMARY,
        pattern_ids=(Intent.CUSTOM_RANGE_SUMMARY.value,),
        when=_range_summary_requested,
    ),
    Branch(
        "monthly_summary",
        "summary",
        Intent.MONTHLY_SUMMARY,
        pattern_ids=(Intent.MONTHLY_SUMMARY.value,),
        when=lambda ctx: ctx.broad_summary,
    ),
    Branch(
        "comparison",
        "comparison",
        Intent.MONTHLY_COMPARISON,
        pattern_ids=(Intent.MONTHLY_COMPARISON.value,),
        when=_month_comparison_requested,
    ),
    Branch("overspending", "overspending", Intent.OVERSPENDING_CHECK, pattern_ids=(Intent.OVERSPENDING_CHECK.value,)),
    Branch("top_category", "top_category", Intent.TOP_CATEGORY, pattern_ids=(Intent.TOP_CATEGORY.value,)),
    Branch("search", "search", Intent.SEARCH_FILTER, pattern_ids=(Intent.SEARCH_FILTER.value,)),
    Branch("forecast", "forecast", Intent.FORECAST, pattern_ids=(Intent.FORECAST.value,)),
    Branch("advice", "advice", Intent.ADVICE, pattern_ids=(Intent.ADVICE.value,)),
    Branch(
        "category",
        "category",
        Intent.CATEGORY_ANALYSIS,
        intents=(Intent.CATEGORY_ANALYSIS,),
        pattern_ids=(Intent.CATEGORY_ANALYSIS.value,),
    ),
]


class ChatService:
    """Runs one chat turn end to end. A turn always completes and is always recorded."""

    def __init__(
        self,
        actions: Optional[FinanceActionService] = None,
        pattern_service: Optional[PatternService] = None,
        knowledge_service: Optional[KnowledgeService] = None,
        learning_service: Optional[LearningService] = None,
        language_service: Optional[LanguageService] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = get_settings()
        self.actions = actions or FinanceActionService()
        self.pattern_service = pattern_service or PatternService()
        self.knowledge_service = knowledge_service or KnowledgeService()
        self.learning_service = learning_service or LearningService(self.pattern_service)
        self.language_service = language_service or LanguageService(self.settings)
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._handlers: dict[str, Callable] = {
            "greeting": self._greeting,
            "set_budget": self._set_budget,
            "get_budget": self._get_budget,
            "set_name": self._set_name,
            "add_expense": self._add_expense,
            "update_expense": self._update_expense,
            "delete_expense": self._delete_expense,
            "range_summary": self._range_summary,
            "summary": self._monthly_summary,
            "comparison": self._comparison,
            "overspending": self._overspending,
            "top_category": self._top_category,
            "search": self._search,
            "forecast": self._forecast,
            "advice": self._advice,
            "category": self._category,
            "spikes": self._spikes,
            "suggestions": self._suggestions,
        }

    async def close(self) -> None:
        """Close the HTTP clients of the rephrasing and embedding stages."""
        await self.language_service.close()
        await self.pattern_service.close()

    def _accepted_pattern(self, match: PatternMatch) -> Optional[str]:
        """Pattern id trusted for routing: lexical hits, or embeddings above the bar."""
        if match.pattern is None:
            return None
        if match.method == MatchMethod.LEXICAL:
            return match.pattern_id
        if match.method == MatchMethod.EMBEDDING and self.pattern_service.is_high_confidence(
            match.score, match.pattern
        ):
            return match.pattern_id
        return None

    # Branch handlers

    async def _greeting(self, ctx: TurnContext) -> BranchOutcome:
        name = await self.actions.get_assistant_name(ctx.user_id)
        return BranchOutcome(GreetingResult(assistant_name=name), success=True)

    async def _set_budget(self, ctx: TurnContext) -> BranchOutcome:
        amount = query_parser.parse_amount(ctx.text)
        if amount is None and ctx.hint is not None:
            amount = ctx.hint.amount
        if amount is None:
            return BranchOutcome(clarification="How much should your monthly budget be?")
        return BranchOutcome(await self.actions.set_budget(ctx.user_id, amount), success=True)

    async def _get_budget(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.get_budget(ctx.user_id), success=True)

    async def _set_name(self, ctx: TurnContext) -> BranchOutcome:
        name = ctx.hint.assistant_name if ctx.hint else None
        name = name or query_parser.extract_assistant_name(ctx.text)
        if not name and ctx.awaiting_name:
            name = query_parser.parse_name_reply(ctx.text)
        if not name:
            return BranchOutcome(clarification=ASK_NAME_TEXT)
        return BranchOutcome(await self.actions.set_assistant_name(ctx.user_id, name), success=True)

    async def _add_expense(self, ctx: TurnContext) -> BranchOutcome:
        payload = ctx.hint.expense_fields() if ctx.hint else {}
        parsed = query_parser.parse_expense_from_text(ctx.text, ctx.now)
        if not payload.get("item"):
            payload["item"] = parsed.item
        if payload.get("amount") is None:
            payload["amount"] = parsed.amount
        if payload.get("category") is None:
            payload["category"] = parsed.category or query_parser.infer_category(payload.get("item"))
        if payload.get("date") is None and parsed.date is not None:
            payload["date"] = parsed.date
        if isinstance(payload.get("category"), ExpenseCategory):
            payload["category"] = payload["category"].value

        if not payload.get("item") or payload.get("amount") is None:
            return BranchOutcome(clarification="What did you spend on, and how much?")
        return BranchOutcome(await self.actions.add_expense(ctx.user_id, payload), success=True)

    async def _update_expense(self, ctx: TurnContext) -> BranchOutcome:
        if ctx.hint is None or not ctx.hint.id:
            return BranchOutcome(clarification="Which expense should I update? Please pick it from your list.")
        updates = ctx.hint.expense_fields()
        if not updates:
            amount = query_parser.parse_amount(ctx.text)
            if amount is not None:
                updates["amount"] = amount
        if not updates:
            return BranchOutcome(clarification="What should I change on that expense?")
        result = await self.actions.update_expense(ctx.user_id, ctx.hint.id, updates)
        return BranchOutcome(result, success=True)

    async def _delete_expense(self, ctx: TurnContext) -> BranchOutcome:
        if ctx.hint is None or not ctx.hint.id:
            return BranchOutcome(clarification="Which expense should I delete? Please pick it from your list.")
        return BranchOutcome(await self.actions.delete_expense(ctx.user_id, ctx.hint.id), success=True)

    async def _range_summary(self, ctx: TurnContext) -> BranchOutcome:
        start, end = query_parser.parse_date_range(ctx.text, ctx.now)
        return BranchOutcome(
            await self.actions.get_summary_by_range(ctx.user_id, start, end), success=True
        )

    async def _monthly_summary(self, ctx: TurnContext) -> BranchOutcome:
        offset = query_parser.parse_month_offset(ctx.text)
        return BranchOutcome(await self.actions.get_monthly_summary(ctx.user_id, offset), success=True)

    async def _comparison(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.compare_months(ctx.user_id, 0, -1), success=True)

    async def _overspending(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.get_overspending_status(ctx.user_id), success=True)

    async def _top_category(self, ctx: TurnContext) -> BranchOutcome:
        start, end = query_parser.parse_date_range(ctx.text, ctx.now)
        result = await self.actions.get_top_categories(
            ctx.user_id,
            top_n=query_parser.parse_top_n(ctx.text),
            direction=query_parser.parse_direction(ctx.text),
            start=start,
            end=end,
        )
        return BranchOutcome(result, success=True)

    async def _search(self, ctx: TurnContext) -> BranchOutcome:
        filters = query_parser.parse_filters(ctx.text, ctx.now)
        return BranchOutcome(await self.actions.search_expenses(ctx.user_id, filters), success=True)

    async def _forecast(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.forecast_spend(ctx.user_id), success=True)

    async def _advice(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.advice(ctx.user_id), success=True)

    async def _category(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.get_category_comparison(ctx.user_id), success=True)

    async def _spikes(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.detect_spikes(ctx.user_id), success=True)

    async def _suggestions(self, ctx: TurnContext) -> BranchOutcome:
        return BranchOutcome(await self.actions.suggestions(ctx.user_id), success=True)

    # Turn pipeline

    def select_branch(self, ctx: TurnContext) -> tuple[Optional[str], str]:
        """Pick the handler tag and the intent label the turn resolves to.

        Falls back to the matched pattern's own handler when no branch
        applies, which is how handlers without a branch (spikes,
        suggestions) are reached.
        """
        for branch in BRANCHES:
            if branch.matches(ctx):
                return branch.handler, branch.label.value

        pattern = ctx.match.pattern
        if pattern is None or pattern.handler not in READ_ONLY_HANDLERS:
            return None, ctx.intent.value
        if ctx.accepted_pattern is None and ctx.intent != Intent.GENERAL_QUESTION:
            return None, ctx.intent.value

        label = pattern.pattern_id if pattern.pattern_id in INTENT_VALUES else ctx.intent.value
        return pattern.handler, label

    async def _dispatch(self, handler: str, ctx: TurnContext) -> BranchOutcome:
        """Run a handler, turning any failure into an error result."""
        try:
            return await self._handlers[handler](ctx)
        except ActionError as e:
            logger.warning(
                "chat_action_rejected",
                handler=handler,
                user_id=ctx.user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return BranchOutcome(ErrorResult(message=str(e)))
        except Exception as e:
            logger.error(
                "chat_action_failed",
                handler=handler,
                user_id=ctx.user_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return BranchOutcome(ErrorResult(message=UNEXPECTED_ERROR_TEXT))

    async def _rephrase_context(self, ctx: TurnContext, resolved_intent: str) -> Optional[dict]:
        if not self.settings.rephrasing_enabled:
            return None
        return {
            "assistant_name": await self.actions.get_assistant_name(ctx.user_id),
            "intent": resolved_intent,
            "pattern_id": ctx.match.pattern_id,
            "confidence": round(ctx.match.score, 3),
        }

    async def handle_turn(self, user_id: str, request: ChatTurnRequest) -> ChatTurnResponse:
        """Process one message for a user and return the rendered reply."""
        started = time.perf_counter()
        text = request.message.strip()

        intent = classify_intent(text)
        match, last_interaction = await asyncio.gather(
            self.pattern_service.find_best_pattern(text),
            self.knowledge_service.get_last_interaction(user_id),
        )

        ctx = TurnContext(
            user_id=user_id,
            text=text,
            intent=intent,
            match=match,
            accepted_pattern=self._accepted_pattern(match),
            hint=request.expense,
            last_interaction=last_interaction,
            now=self._now(),
        )

        handler, resolved_intent = self.select_branch(ctx)
        outcome = await self._dispatch(handler, ctx) if handler else BranchOutcome()

        if not outcome.success and "budget" in text.lower() and not DIGIT_PATTERN.search(text):
            handler, resolved_intent = "get_budget", Intent.GET_BUDGET.value
            outcome = await self._dispatch(handler, ctx)

        if not outcome.success and outcome.clarification is None and outcome.result is None:
            outcome.clarification = self.learning_service.plan_clarification(
                match.score, resolved_intent
            )

        response_text, model_used = await self.language_service.to_natural_language(
            Intent(resolved_intent) if resolved_intent in INTENT_VALUES else intent,
            outcome.result,
            outcome.clarification,
            await self._rephrase_context(ctx, resolved_intent),
        )

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        interaction = await self.knowledge_service.record_interaction(
            user_id=user_id,
            question=text,
            detected_pattern=match.pattern_id,
            intent=resolved_intent,
            success=outcome.success,
            metadata=InteractionMetadata(
                retrieved_patterns=[match.pattern_id] if match.pattern else [],
                confidence=match.score,
                model_used=model_used,
                response_time=elapsed_ms,
            ),
        )

        logger.info(
            "chat_turn_completed",
            user_id=user_id,
            interaction_id=str(interaction.id),
            classified_intent=intent.value,
            resolved_intent=resolved_intent,
            handler=handler,
            pattern_id=match.pattern_id,
            match_method=match.method.value,
            confidence=round(match.score, 3),
            success=outcome.success,
            clarification=outcome.clarification is not None,
            response_time_ms=elapsed_ms,
        )

        return ChatTurnResponse(
            success=True,
            response=response_text,
            interaction_id=interaction.id,
            confidence=match.score,
            pattern_id=match.pattern_id,
            intent=resolved_intent,
            clarification=outcome.clarification is not None,
        )
