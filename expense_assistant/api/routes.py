"""API route definitions for the assistant and health endpoints."""

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import asyncpg
import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from expense_assistant.api.dependencies import (
    get_action_service,
    get_chat_service,
    get_current_user,
    get_knowledge_service,
    get_learning_service,
)
from expense_assistant.config import get_settings
from expense_assistant.database import schema_status
from expense_assistant.models.request import ChatTurnRequest, FeedbackRequest
from expense_assistant.models.response import ChatTurnResponse, ErrorResponse, FeedbackResponse
from expense_assistant.models.results import SuggestionsResult
from expense_assistant.models.user import CurrentUser
from expense_assistant.services.action_service import FinanceActionService
from expense_assistant.services.chat_service import ChatService
from expense_assistant.services.knowledge_service import KnowledgeService
from expense_assistant.services.learning_service import LearningService
from expense_assistant.services.redis_service import get_redis

logger = structlog.get_logger(__name__)

router = APIRouter()
ai_router = APIRouter(prefix="/ai", tags=["assistant"])

# Raised when Postgres is down or the pool was never created
STORE_UNAVAILABLE_ERRORS = (asyncpg.PostgresError, OSError, RuntimeError)


def error_response(http_request: Request, status_code: int, error: str, detail: str) -> JSONResponse:
    correlation_id = getattr(http_request.state, "correlation_id", None) or str(uuid4())
    body = ErrorResponse(error=error, detail=detail, correlation_id=correlation_id)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(),
        headers={"X-Correlation-Id": correlation_id},
    )


@router.get("/health")
async def health_check() -> dict:
    """Store availability, pending migrations and the stored pattern count.

    ``status`` is "degraded" while Postgres is unreachable or migrations are
    pending; a missing Redis only disables the embedding cache.
    """
    schema = await schema_status()
    redis_client = await get_redis()

    degraded = schema["database"] != "healthy" or bool(schema.get("pending_migrations"))
    return {
        "status": "degraded" if degraded else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **schema,
        "redis": "healthy" if redis_client else "unavailable",
    }


@ai_router.post("/chat", response_model=ChatTurnResponse, response_model_by_alias=True)
async def chat(
    request: ChatTurnRequest,
    http_request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
):
    """Run one assistant turn for the authenticated user.

    Raises:
        400 on an empty or oversized message, 401 without a valid token,
        503 when the stores are unavailable, 504 on timeout
    """
    settings = get_settings()
    logger.info(
        "chat_request_received",
        user_id=current_user.id,
        message_length=len(request.message),
        has_expense_hint=request.expense is not None,
    )

    try:
        async with asyncio.timeout(settings.timeout_seconds):
            return await chat_service.handle_turn(current_user.id, request)
    except TimeoutError:
        logger.error("chat_timeout", user_id=current_user.id, timeout_seconds=settings.timeout_seconds)
        return error_response(
            http_request,
            504,
            "Request timed out",
            "The assistant took too long to respond. Please try again.",
        )
    except STORE_UNAVAILABLE_ERRORS as e:
        logger.error(
            "chat_store_unavailable",
            user_id=current_user.id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return error_response(
            http_request,
            503,
            "Service unavailable",
            "Your data could not be reached right now. Please try again later.",
        )


@ai_router.post("/feedback", response_model=FeedbackResponse)
async def feedback(
    request: FeedbackRequest,
    http_request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    knowledge_service: KnowledgeService = Depends(get_knowledge_service),
    learning_service: LearningService = Depends(get_learning_service),
):
    """Rate a past interaction and feed the rating into pattern confidence."""
    interaction = await knowledge_service.get_interaction(current_user.id, request.interaction_id)
    if interaction is None:
        return error_response(
            http_request,
            404,
            "Interaction not found",
            "Feedback can only be given on your own recorded interactions.",
        )

    await knowledge_service.record_feedback(
        interaction_id=request.interaction_id,
        rating=request.rating,
        correction=request.correction,
    )
    new_confidence = await learning_service.apply_feedback(request.pattern_id, request.rating)

    logger.info(
        "feedback_applied",
        user_id=current_user.id,
        interaction_id=str(request.interaction_id),
        pattern_id=request.pattern_id,
        rating=request.rating,
        confidence=new_confidence,
    )
    return FeedbackResponse(success=True)


@ai_router.get("/suggestions", response_model=SuggestionsResult)
async def suggestions(
    current_user: CurrentUser = Depends(get_current_user),
    actions: FinanceActionService = Depends(get_action_service),
) -> SuggestionsResult:
    """Spending suggestions over the last 30 days."""
    return await actions.suggestions(current_user.id)


router.include_router(ai_router)
