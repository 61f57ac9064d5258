"""Assistant pipeline models: intents, patterns, interactions and feedback."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.98


class Intent(str, Enum):
    """Discrete labels describing what the user wants done.

    The rule-based classifier emits the first ten. The remaining labels are
    branch keys reached through seeded pattern ids.
    """

    ADD_EXPENSE = "ADD_EXPENSE"
    UPDATE_EXPENSE = "UPDATE_EXPENSE"
    DELETE_EXPENSE = "DELETE_EXPENSE"
    SET_BUDGET = "SET_BUDGET"
    GET_BUDGET = "GET_BUDGET"
    SET_ASSISTANT_NAME = "SET_ASSISTANT_NAME"
    SHOW_SUMMARY = "SHOW_SUMMARY"
    CATEGORY_ANALYSIS = "CATEGORY_ANALYSIS"
    GENERAL_QUESTION = "GENERAL_QUESTION"
    UNKNOWN = "UNKNOWN"

    GREETING = "GREETING"
    MONTHLY_SUMMARY = "MONTHLY_SUMMARY"
    CUSTOM_RANGE_SUMMARY = "CUSTOM_RANGE_SUMMARY"
    MONTHLY_COMPARISON = "MONTHLY_COMPARISON"
    OVERSPENDING_CHECK = "OVERSPENDING_CHECK"
    TOP_CATEGORY = "TOP_CATEGORY"
    SEARCH_FILTER = "SEARCH_FILTER"
    FORECAST = "FORECAST"
    ADVICE = "ADVICE"
    SPENDING_SPIKES = "SPENDING_SPIKES"


class MatchMethod(str, Enum):
    """How a pattern match was obtained."""

    EMBEDDING = "embedding"
    LEXICAL = "lexical"
    NONE = "none"


class Pattern(BaseModel):
    """A named exemplar cluster used for fuzzy matching free text to a handler."""

    pattern_id: str
    sample_questions: list[str] = Field(default_factory=list)
    embedding: list[float] = Field(default_factory=list)
    handler: str = ""
    confidence: float = Field(default=0.5, ge=MIN_CONFIDENCE, le=MAX_CONFIDENCE)
    usage_count: int = Field(default=0, ge=0)


class PatternMatch(BaseModel):
    """Best pattern for an input and its similarity score."""

    pattern: Optional[Pattern] = None
    score: float = 0.0
    method: MatchMethod = MatchMethod.NONE

    @property
    def pattern_id(self) -> str:
        return self.pattern.pattern_id if self.pattern else Intent.UNKNOWN.value


class InteractionMetadata(BaseModel):
    """Diagnostics stored alongside each chat turn."""

    retrieved_patterns: list[str] = Field(default_factory=list)
    confidence: float = 0.0
    model_used: str = ""
    response_time: int = Field(default=0, ge=0)


class Interaction(BaseModel):
    """One recorded chat turn. Immutable once stored."""

    id: UUID
    user_id: str
    question: str
    detected_pattern: str = Intent.UNKNOWN.value
    intent: str = Intent.UNKNOWN.value
    success: bool = False
    metadata: InteractionMetadata = Field(default_factory=InteractionMetadata)
    created_at: datetime

    model_config = {"frozen": True}


class Feedback(BaseModel):
    """A user's rating of a past interaction."""

    id: UUID
    interaction_id: UUID
    rating: int = Field(default=0, ge=-1, le=1)
    correction: str = ""
    created_at: datetime
