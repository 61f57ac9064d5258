"""Pattern service: stores seed-phrase patterns and matches free text against them."""

from typing import Optional

import structlog

from expense_assistant.config import get_settings
from expense_assistant.database import get_pool
from expense_assistant.models.assistant import (
    MAX_CONFIDENCE,
    MIN_CONFIDENCE,
    Intent,
    MatchMethod,
    Pattern,
    PatternMatch,
)
from expense_assistant.services.embedding_service import (
    EmbeddingProvider,
    EmbeddingRequestError,
    cosine_similarity,
    get_embedding_provider,
)

logger = structlog.get_logger(__name__)

LEXICAL_MATCH_SCORE = 0.5
DEFAULT_PATTERN_CONFIDENCE = 0.5

# Upserted at every start. Labels the rule classifier never emits are only
# reachable through these ids.
BASE_PATTERNS = [
    {
        "pattern_id": Intent.GREETING.value,
        "handler": "greeting",
        "sample_questions": ["hello", "hi there", "hey there", "good morning", "good evening", "what can you do"],
        "base_confidence": 0.7,
    },
    {
        "pattern_id": Intent.MONTHLY_SUMMARY.value,
        "handler": "summary",
        "sample_questions": ["how much did i spend this month", "monthly expense total", "show this month's spending"],
        "base_confidence": 0.72,
    },
    {
        "pattern_id": Intent.CUSTOM_RANGE_SUMMARY.value,
        "handler": "range_summary",
        "sample_questions": ["how much did i spend last week", "spending in the last 7 days", "expenses between two dates"],
        "base_confidence": 0.7,
    },
    {
        "pattern_id": Intent.MONTHLY_COMPARISON.value,
        "handler": "comparison",
        "sample_questions": ["compare this month with last month", "did i spend more than last month", "month over month spending"],
        "base_confidence": 0.7,
    },
    {
        "pattern_id": Intent.OVERSPENDING_CHECK.value,
        "handler": "overspending",
        "sample_questions": ["am i overspending", "am i spending too much", "am i spending beyond my means"],
        "base_confidence": 0.7,
    },
    {
        "pattern_id": Intent.TOP_CATEGORY.value,
        "handler": "top_category",
        "sample_questions": ["what is my top category", "where do i spend the most", "top spending categories"],
        "base_confidence": 0.7,
    },
    {
        "pattern_id": Intent.SEARCH_FILTER.value,
        "handler": "search",
        "sample_questions": ["find my coffee expenses", "search expenses", "show expenses over 500"],
        "base_confidence": 0.68,
    },
    {
        "pattern_id": Intent.FORECAST.value,
        "handler": "forecast",
        "sample_questions": ["forecast my spending", "how much will i spend this month", "projected month total"],
        "base_confidence": 0.7,
    },
    {
        "pattern_id": Intent.ADVICE.value,
        "handler": "advice",
        "sample_questions": ["give me some advice", "how can i save money", "any tips to spend less"],
        "base_confidence": 0.68,
    },
    {
        "pattern_id": Intent.CATEGORY_ANALYSIS.value,
        "handler": "category",
        "sample_questions": ["which category do i spend the most on", "category breakdown", "compare categories"],
        "base_confidence": 0.7,
    },
    {
        "pattern_id": Intent.SPENDING_SPIKES.value,
        "handler": "spikes",
        "sample_questions": ["any unusual spending", "spending spikes", "which categories went up"],
        "base_confidence": 0.66,
    },
    {
        "pattern_id": "SPENDING_SUGGESTIONS",
        "handler": "suggestions",
        "sample_questions": ["suggestions for my spending", "how am i doing with money", "insights on my expenses"],
        "base_confidence": 0.66,
    },
]


def clamp_confidence(confidence: float) -> float:
    """Clamp a confidence into [MIN_CONFIDENCE, MAX_CONFIDENCE]."""
    return min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, confidence))


def _row_to_pattern(row) -> Pattern:
    return Pattern(
        pattern_id=row["pattern_id"],
        sample_questions=list(row["sample_questions"] or []),
        embedding=[float(x) for x in (row["embedding"] or [])],
        handler=row["handler"] or "",
        confidence=float(row["confidence"]),
        usage_count=row["usage_count"],
    )


class PatternService:
    """Finds the best stored pattern for a question and maintains the pattern set."""

    def __init__(self, embedding_provider: Optional[EmbeddingProvider] = None):
        self.settings = get_settings()
        self.embedding_provider = embedding_provider or get_embedding_provider()

    async def _embed_or_none(self, text: str) -> Optional[list[float]]:
        try:
            return await self.embedding_provider.embed(text)
        except EmbeddingRequestError as e:
            logger.warning("embedding_request_failed", error=str(e))
            return None

    async def close(self) -> None:
        await self.embedding_provider.close()

    async def list_patterns(self, limit: Optional[int] = None) -> list[Pattern]:
        """Load stored patterns in creation order, up to the candidate limit."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT pattern_id, sample_questions, embedding, handler, confidence, usage_count
                FROM ai_patterns
                ORDER BY created_at ASC, pattern_id ASC
                LIMIT $1
                """,
                limit or self.settings.max_pattern_candidates,
            )
        return [_row_to_pattern(row) for row in rows]

    async def find_best_pattern(self, question: str) -> PatternMatch:
        """Return the best matching pattern and its score.

        Uses cosine similarity when the question can be embedded and at least
        one stored embedding has the same length; otherwise falls back to
        lexical containment of a sample question with a fixed score.
        """
        patterns = await self.list_patterns()
        if not patterns:
            return PatternMatch()

        query_embedding = await self._embed_or_none(question)
        if query_embedding is not None:
            best: Optional[Pattern] = None
            best_score = -1.0
            for pattern in patterns:
                if len(pattern.embedding) != len(query_embedding):
                    continue
                score = cosine_similarity(query_embedding, pattern.embedding)
                if score > best_score:
                    best = pattern
                    best_score = score
            if best is not None:
                return PatternMatch(pattern=best, score=best_score, method=MatchMethod.EMBEDDING)
            logger.debug("pattern_embeddings_incomparable", dimensions=len(query_embedding))

        return self._lexical_match(question, patterns)

    @staticmethod
    def _lexical_match(question: str, patterns: list[Pattern]) -> PatternMatch:
        lower = question.lower()
        for pattern in patterns:
            for sample in pattern.sample_questions:
                sample_lower = sample.lower().strip()
                if sample_lower and sample_lower in lower:
                    return PatternMatch(
                        pattern=pattern,
                        score=LEXICAL_MATCH_SCORE,
                        method=MatchMethod.LEXICAL,
                    )
        return PatternMatch()

    def is_high_confidence(self, score: float, pattern: Optional[Pattern]) -> bool:
        """A pattern's learned confidence can raise the acceptance bar, never lower it."""
        baseline = pattern.confidence if pattern else DEFAULT_PATTERN_CONFIDENCE
        return score >= max(self.settings.pattern_match_threshold, baseline)

    async def upsert_pattern(
        self,
        pattern_id: str,
        sample_questions: Optional[list[str]] = None,
        handler: str = "",
        base_confidence: float = DEFAULT_PATTERN_CONFIDENCE,
    ) -> Pattern:
        """Create or refresh a pattern.

        The embedding and handler are replaced, sample questions are merged as
        an ordered set union, and confidence/usage_count are only set on insert.
        """
        sample_questions = sample_questions or []
        text_for_embedding = "\n".join(sample_questions) if sample_questions else pattern_id
        embedding = await self._embed_or_none(text_for_embedding)

        pool = await get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO ai_patterns
                    (pattern_id, sample_questions, embedding, handler, confidence, usage_count)
                VALUES ($1, $2, $3, $4, $5, 0)
                ON CONFLICT (pattern_id) DO UPDATE
                SET handler = EXCLUDED.handler,
                    embedding = EXCLUDED.embedding,
                    sample_questions = ai_patterns.sample_questions || ARRAY(
                        SELECT q FROM unnest(EXCLUDED.sample_questions) WITH ORDINALITY AS t(q, n)
                        WHERE NOT (q = ANY(ai_patterns.sample_questions))
                        ORDER BY n
                    ),
                    updated_at = NOW()
                RETURNING pattern_id, sample_questions, embedding, handler, confidence, usage_count
                """,
                pattern_id,
                list(dict.fromkeys(sample_questions)),
                embedding or [],
                handler,
                clamp_confidence(base_confidence),
            )

        pattern = _row_to_pattern(row)
        logger.info(
            "pattern_upserted",
            pattern_id=pattern_id,
            handler=handler,
            sample_count=len(pattern.sample_questions),
            embedded=bool(embedding),
        )
        return pattern

    async def adjust_confidence(self, pattern_id: str, delta: float) -> Optional[float]:
        """Apply a clamped confidence delta and count the usage in one statement.

        Returns:
            The new confidence, or None if the pattern does not exist
        """
        pool = await get_pool()
        async with pool.acquire() as conn:
            new_confidence = await conn.fetchval(
                """
                UPDATE ai_patterns
                SET confidence = LEAST($3, GREATEST($4, confidence + $2)),
                    usage_count = usage_count + 1,
                    updated_at = NOW()
                WHERE pattern_id = $1
                RETURNING confidence
                """,
                pattern_id,
                delta,
                MAX_CONFIDENCE,
                MIN_CONFIDENCE,
            )

        if new_confidence is None:
            logger.warning("pattern_confidence_target_missing", pattern_id=pattern_id)
            return None

        logger.info(
            "pattern_confidence_adjusted",
            pattern_id=pattern_id,
            delta=delta,
            confidence=new_confidence,
        )
        return float(new_confidence)

    async def seed_base_patterns(self) -> int:
        """Upsert BASE_PATTERNS. Safe to run at every process start."""
        for seed in BASE_PATTERNS:
            await self.upsert_pattern(**seed)
        logger.info("base_patterns_seeded", count=len(BASE_PATTERNS))
        return len(BASE_PATTERNS)
