"""Unit tests for feedback learning and clarification planning."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from expense_assistant.models.assistant import MAX_CONFIDENCE, MIN_CONFIDENCE
from expense_assistant.services.learning_service import (
    NEGATIVE_DELTA,
    POSITIVE_DELTA,
    LearningService,
    confidence_delta,
    next_confidence,
)


@pytest.fixture
def pattern_service():
    service = MagicMock()
    service.adjust_confidence = AsyncMock(return_value=0.72)
    return service


class TestConfidenceRules:
    @pytest.mark.parametrize("rating, delta", [(1, POSITIVE_DELTA), (-1, NEGATIVE_DELTA), (0, 0.0)])
    def test_delta_per_rating(self, rating, delta):
        assert confidence_delta(rating) == delta

    def test_penalty_outweighs_reward(self):
        assert abs(NEGATIVE_DELTA) > POSITIVE_DELTA

    def test_next_confidence_is_clamped(self):
        assert next_confidence(0.97, 1) == MAX_CONFIDENCE
        assert next_confidence(0.12, -1) == MIN_CONFIDENCE
        assert next_confidence(0.5, 1) == pytest.approx(0.52)

    def test_repeated_feedback_stays_in_range(self):
        confidence = 0.5
        for _ in range(100):
            confidence = next_confidence(confidence, -1)
        assert confidence == MIN_CONFIDENCE
        for _ in range(100):
            confidence = next_confidence(confidence, 1)
        assert confidence == MAX_CONFIDENCE


class TestApplyFeedback:
    @pytest.mark.asyncio
    async def test_positive_rating_adjusts_pattern(self, pattern_service):
        service = LearningService(pattern_service=pattern_service)

        result = await service.apply_feedback("MONTHLY_SUMMARY", 1)

        assert result == 0.72
        pattern_service.adjust_confidence.assert_awaited_once_with("MONTHLY_SUMMARY", POSITIVE_DELTA)

    @pytest.mark.asyncio
    async def test_negative_rating_uses_penalty(self, pattern_service):
        service = LearningService(pattern_service=pattern_service)

        await service.apply_feedback("FORECAST", -1)

        pattern_service.adjust_confidence.assert_awaited_once_with("FORECAST", NEGATIVE_DELTA)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pattern_id, rating", [(None, 1), ("", -1), ("FORECAST", 0)])
    async def test_nothing_to_apply(self, pattern_service, pattern_id, rating):
        service = LearningService(pattern_service=pattern_service)

        assert await service.apply_feedback(pattern_id, rating) is None
        pattern_service.adjust_confidence.assert_not_called()


class TestPlanClarification:
    def test_low_confidence_asks(self):
        service = LearningService(pattern_service=MagicMock())
        question = service.plan_clarification(0.3, "UNKNOWN")
        assert question == (
            "I'm not fully sure about your request (UNKNOWN). Could you clarify what you want to do?"
        )

    def test_confident_turn_needs_no_question(self):
        service = LearningService(pattern_service=MagicMock())
        assert service.plan_clarification(0.75, "FORECAST") is None
        assert service.plan_clarification(0.9, "FORECAST") is None
