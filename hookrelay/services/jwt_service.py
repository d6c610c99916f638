"""
JWT token service for the management API.

Tokens are issued by the product's auth backend; HookRelay verifies
them and reads the owning user id from `sub`.
"""
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from hookrelay.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, user_id: str, email: str, role: str = "member") -> str:
        """
        Create a JWT token for a dashboard user.

        Args:
            user_id: User's unique ID
            email: User's email
            role: User role

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": user_id,
            "email": email,
            "role": role,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid or expired
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
