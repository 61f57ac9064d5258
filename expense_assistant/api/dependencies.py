"""FastAPI dependencies for authentication and service wiring."""

from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from expense_assistant.models.user import CurrentUser
from expense_assistant.services.action_service import FinanceActionService
from expense_assistant.services.auth_service import AuthService
from expense_assistant.services.chat_service import ChatService
from expense_assistant.services.knowledge_service import KnowledgeService
from expense_assistant.services.learning_service import LearningService

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    """Resolve the caller from a JWT Bearer token.

    Raises:
        HTTPException 401: If the token is missing, invalid, expired or has no subject
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing access token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = AuthService().validate_access_token(credentials.credentials)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CurrentUser(id=str(user_id), username=payload.get("username") or "")


@lru_cache
def get_chat_service() -> ChatService:
    """The process-wide chat service.

    Built once so the embedding provider, its local model and the HTTP
    clients live for the whole process. The lifespan closes it on shutdown.
    """
    return ChatService()


def get_knowledge_service() -> KnowledgeService:
    return get_chat_service().knowledge_service


def get_learning_service() -> LearningService:
    return get_chat_service().learning_service


def get_action_service() -> FinanceActionService:
    return get_chat_service().actions
