"""FastAPI application initialization."""

from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from expense_assistant import database
from expense_assistant.api.dependencies import get_chat_service
from expense_assistant.api.middleware import CorrelationIdMiddleware
from expense_assistant.api.routes import error_response, router
from expense_assistant.config import get_settings
from expense_assistant.services import redis_service
from expense_assistant.services.logging_service import configure_logging, get_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the stores and seed patterns; close clients and stores on the way out."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("main")
    chat_service = get_chat_service()

    # Patterns are seeded through the process-wide service so the embedding
    # model loaded here is the one chat turns use
    try:
        await database.init_database()
        applied = await database.run_migrations()
        logger.info("database_initialized", migrations_applied=applied)
    except Exception as e:
        logger.warning(
            "database_initialization_failed",
            error=str(e),
            note="Continuing without database - chat turns will return 503",
        )
    else:
        try:
            seeded = await chat_service.pattern_service.seed_base_patterns()
            logger.info("base_patterns_seeded", count=seeded)
        except Exception as e:
            logger.warning("pattern_seed_failed", error=str(e))

    if await redis_service.get_redis() is None:
        logger.warning(
            "redis_initialization_failed",
            note="Continuing without Redis - embedding cache will be unavailable",
        )

    logger.info(
        "application_started",
        log_level=settings.log_level,
        local_embeddings=settings.local_embeddings_enabled,
        external_embeddings=settings.external_embeddings_enabled,
        rephrasing=settings.rephrasing_enabled,
    )

    yield

    try:
        await chat_service.close()
    except Exception as e:
        logger.warning("http_clients_close_failed", error=str(e))

    try:
        await database.close_database()
    except Exception as e:
        logger.warning("database_close_failed", error=str(e))

    try:
        await redis_service.close_redis()
    except Exception as e:
        logger.warning("redis_close_failed", error=str(e))

    logger.info("application_shutdown")


app = FastAPI(
    title="Expense Assistant API",
    description="Conversational assistant over personal expenses and budgets",
    version="0.1.0",
    lifespan=lifespan,
)


def describe_validation_errors(errors) -> str:
    """One "field: message" clause per error; the request-part prefix is dropped."""
    parts = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        field = ".".join(loc) or "request"
        parts.append(f"{field}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Request validation failed"


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed chat or feedback bodies are 400s in the shared error shape."""
    errors = exc.errors()
    detail = describe_validation_errors(errors)
    get_logger("main").warning(
        "validation_error",
        path=request.url.path,
        detail=detail,
        error_count=len(errors),
    )
    return error_response(request, 400, "Validation error", detail)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(router)
