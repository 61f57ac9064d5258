"""Access token handling. The token's ``sub`` claim is the user id."""

from datetime import datetime, timedelta, timezone

import jwt
import structlog

from expense_assistant.config import get_settings

logger = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60


class AuthService:
    """Signs and validates HS256 access tokens."""

    def __init__(self):
        self.settings = get_settings()

    def create_access_token(
        self, user_id: str, username: str = "", expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES
    ) -> str:
        """Create a signed JWT access token.

        Args:
            user_id: User id placed in the 'sub' claim
            username: Display name included in the payload
            expires_minutes: Token lifetime

        Returns:
            Encoded JWT string
        """
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "username": username,
            "iat": now,
            "exp": now + timedelta(minutes=expires_minutes),
        }
        token = jwt.encode(payload, self.settings.jwt_secret, algorithm=JWT_ALGORITHM)
        logger.debug("access_token_created", user_id=user_id, expires_minutes=expires_minutes)
        return token

    def validate_access_token(self, token: str) -> dict:
        """Decode and validate a JWT access token.

        Raises:
            ValueError: If the token is invalid, expired, or malformed
        """
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[JWT_ALGORITHM],
            )
        except jwt.ExpiredSignatureError:
            raise ValueError("Access token has expired")
        except jwt.InvalidTokenError as e:
            raise ValueError(f"Invalid access token: {e}")
