"""Chat and feedback response models."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ChatTurnResponse(BaseModel):
    """Result of one chat turn.

    Attributes:
        success: True when the turn completed (it always does once accepted)
        response: Rendered text shown to the user
        interaction_id: Id of the recorded interaction, used for feedback
        confidence: Pattern similarity score for this turn
        pattern_id: Best matching pattern id or "UNKNOWN"
        intent: Intent the turn was resolved to
        clarification: True when the response is a clarification question
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    response: str
    interaction_id: UUID
    confidence: float
    pattern_id: str
    intent: str
    clarification: bool = False


class FeedbackResponse(BaseModel):
    success: bool


class ErrorResponse(BaseModel):
    """Error response: what happened + why/what to do."""

    error: str
    detail: str
    correlation_id: str
