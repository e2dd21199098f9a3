"""
JWT token management for API and replication authentication.

The subject is the principal id; the role decides whether the bearer may
mutate other principals' stages.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from stagegate.config import get_settings


class Role(str, Enum):
    """Bearer roles."""
    PRINCIPAL = "principal"
    ADMIN = "admin"


class AccessTokenPayload(BaseModel):
    """JWT access token payload."""

    sub: str  # Principal ID
    role: Role
    exp: datetime
    iat: datetime
    jti: str

    @property
    def principal_id(self) -> uuid.UUID:
        return uuid.UUID(self.sub)

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class JWTManager:
    """
    JWT token creation and verification.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        access_token_expire_minutes: Optional[int] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.secret_key
        self.algorithm = algorithm or settings.algorithm
        self.access_token_expire_minutes = access_token_expire_minutes or settings.access_token_expire_minutes

    def create_access_token(
        self,
        principal_id: uuid.UUID,
        role: Role = Role.PRINCIPAL,
        expires_delta: Optional[timedelta] = None,
    ) -> tuple[str, datetime, str]:
        """
        Create a new access token.

        Returns:
            Tuple of (token, expiration_datetime, token_id)
        """
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))
        jti = str(uuid.uuid4())

        payload = {
            "sub": str(principal_id),
            "role": Role(role).value,
            "exp": expire,
            "iat": now,
            "jti": jti,
            "type": "access",
        }

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        return token, expire, jti

    def verify_access_token(self, token: str) -> Optional[AccessTokenPayload]:
        """
        Verify and decode an access token.

        Returns:
            AccessTokenPayload if valid, None otherwise
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
            )

            # Verify it's an access token
            if payload.get("type") != "access":
                return None

            uuid.UUID(payload["sub"])
            return AccessTokenPayload(
                sub=payload["sub"],
                role=Role(payload.get("role", Role.PRINCIPAL.value)),
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                jti=payload["jti"],
            )
        except (JWTError, KeyError, ValueError):
            return None


# Default manager instance
_jwt_manager: Optional[JWTManager] = None


def get_jwt_manager() -> JWTManager:
    """Get or create the default JWT manager."""
    global _jwt_manager
    if _jwt_manager is None:
        _jwt_manager = JWTManager()
    return _jwt_manager


# Convenience functions
def create_access_token(
    principal_id: uuid.UUID,
    role: Role = Role.PRINCIPAL,
    expires_delta: Optional[timedelta] = None,
) -> tuple[str, datetime, str]:
    """Create an access token."""
    return get_jwt_manager().create_access_token(principal_id, role, expires_delta)


def verify_access_token(token: str) -> Optional[AccessTokenPayload]:
    """Verify an access token."""
    return get_jwt_manager().verify_access_token(token)
