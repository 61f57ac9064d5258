"""Interaction and feedback persistence for the assistant."""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from expense_assistant.database import get_pool
from expense_assistant.models.assistant import Feedback, Intent, Interaction, InteractionMetadata

logger = structlog.get_logger(__name__)

VALID_RATINGS = (-1, 0, 1)


def _row_to_interaction(row) -> Interaction:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return Interaction(
        id=row["id"],
        user_id=row["user_id"],
        question=row["question"],
        detected_pattern=row["detected_pattern"],
        intent=row["intent"],
        success=row["success"],
        metadata=InteractionMetadata(**(metadata or {})),
        created_at=row["created_at"],
    )


class KnowledgeService:
    """Append-only audit trail of chat turns and the ratings given to them."""

    async def record_interaction(
        self,
        user_id: str,
        question: str,
        detected_pattern: str = Intent.UNKNOWN.value,
        intent: str = Intent.UNKNOWN.value,
        success: bool = False,
        metadata: Optional[InteractionMetadata] = None,
    ) -> Interaction:
        """Persist one turn. Called for failed turns too."""
        interaction = Interaction(
            id=uuid4(),
            user_id=user_id,
            question=question,
            detected_pattern=detected_pattern or Intent.UNKNOWN.value,
            intent=intent or Intent.UNKNOWN.value,
            success=success,
            metadata=metadata or InteractionMetadata(),
            created_at=datetime.now(timezone.utc),
        )

        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ai_interactions
                    (id, user_id, question, detected_pattern, intent, success, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                interaction.id,
                interaction.user_id,
                interaction.question,
                interaction.detected_pattern,
                interaction.intent,
                interaction.success,
                interaction.metadata.model_dump_json(),
                interaction.created_at,
            )

        logger.info(
            "interaction_recorded",
            interaction_id=str(interaction.id),
            user_id=user_id,
            intent=interaction.intent,
            pattern_id=interaction.detected_pattern,
            success=success,
            response_time_ms=interaction.metadata.response_time,
        )
        return interaction

    async def get_last_interaction(self, user_id: str) -> Optional[Interaction]:
        """Most recent turn for the user, if any."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, question, detected_pattern, intent, success, metadata, created_at
                FROM ai_interactions
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                user_id,
            )
        return _row_to_interaction(row) if row else None

    async def get_interaction(self, user_id: str, interaction_id: UUID) -> Optional[Interaction]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, question, detected_pattern, intent, success, metadata, created_at
                FROM ai_interactions
                WHERE id = $1 AND user_id = $2
                """,
                interaction_id,
                user_id,
            )
        return _row_to_interaction(row) if row else None

    async def record_feedback(
        self,
        interaction_id: UUID,
        rating: int,
        correction: str = "",
    ) -> Feedback:
        """Persist a rating for a recorded interaction.

        Raises:
            ValueError: If rating is not -1, 0 or 1
        """
        if rating not in VALID_RATINGS:
            raise ValueError(f"Rating must be one of {VALID_RATINGS}")

        feedback = Feedback(
            id=uuid4(),
            interaction_id=interaction_id,
            rating=rating,
            correction=correction or "",
            created_at=datetime.now(timezone.utc),
        )

        pool = await get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ai_feedback (id, interaction_id, rating, correction, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                feedback.id,
                feedback.interaction_id,
                feedback.rating,
                feedback.correction,
                feedback.created_at,
            )

        logger.info(
            "feedback_recorded",
            feedback_id=str(feedback.id),
            interaction_id=str(interaction_id),
            rating=rating,
            has_correction=bool(feedback.correction),
        )
        return feedback
