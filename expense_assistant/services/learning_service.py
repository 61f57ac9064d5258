"""Feedback-driven pattern confidence and clarification planning."""

from typing import Optional

import structlog

from expense_assistant.config import get_settings
from expense_assistant.services.pattern_service import PatternService, clamp_confidence

logger = structlog.get_logger(__name__)

# Wrong answers cost more confidence than right answers earn
POSITIVE_DELTA = 0.02
NEGATIVE_DELTA = -0.05

CLARIFICATION_TEMPLATE = (
    "I'm not fully sure about your request ({intent}). Could you clarify what you want to do?"
)


def confidence_delta(rating: int) -> float:
    """Delta for a rating: 0 for neutral, else the asymmetric reward or penalty."""
    if rating > 0:
        return POSITIVE_DELTA
    if rating < 0:
        return NEGATIVE_DELTA
    return 0.0


def next_confidence(current: float, rating: int) -> float:
    """Confidence after one rating, clamped to the allowed range."""
    return clamp_confidence(current + confidence_delta(rating))


class LearningService:
    """Turns ratings into confidence adjustments and low confidence into questions."""

    def __init__(self, pattern_service: Optional[PatternService] = None):
        self.settings = get_settings()
        self._pattern_service = pattern_service

    @property
    def pattern_service(self) -> PatternService:
        if self._pattern_service is None:
            self._pattern_service = PatternService()
        return self._pattern_service

    async def apply_feedback(self, pattern_id: Optional[str], rating: int) -> Optional[float]:
        """Adjust the pattern's confidence for a rating.

        Returns:
            The new confidence, or None when nothing changed (neutral rating,
            no pattern id, or unknown pattern)
        """
        delta = confidence_delta(rating)
        if not pattern_id or delta == 0:
            logger.debug("feedback_not_applied", pattern_id=pattern_id, rating=rating)
            return None
        return await self.pattern_service.adjust_confidence(pattern_id, delta)

    def plan_clarification(self, confidence: float, intent: str) -> Optional[str]:
        """A clarification question when confidence is below the threshold."""
        if confidence >= self.settings.clarification_threshold:
            return None
        return CLARIFICATION_TEMPLATE.format(intent=intent)
