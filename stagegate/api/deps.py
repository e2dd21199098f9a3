"""
FastAPI dependencies for authentication, authorization and the stage context.
"""

import uuid
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from stagegate.context import StageContext
from stagegate.database import async_session_maker
from stagegate.kernel.identity.jwt import AccessTokenPayload, verify_access_token


# Security scheme
security = HTTPBearer(auto_error=False)


async def get_db() -> AsyncSession:
    """Dependency that yields database sessions."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_context(request: Request) -> StageContext:
    """The StageContext built by the application lifespan."""
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stage engine not started",
        )
    return context


Context = Annotated[StageContext, Depends(get_context)]


async def get_current_bearer(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> AccessTokenPayload:
    """Get the authenticated bearer or raise 401."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


CurrentBearer = Annotated[AccessTokenPayload, Depends(get_current_bearer)]


async def require_admin(bearer: CurrentBearer) -> AccessTokenPayload:
    if not bearer.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return bearer


RequireAdmin = Annotated[AccessTokenPayload, Depends(require_admin)]


def ensure_self_or_admin(bearer: AccessTokenPayload, principal_id: uuid.UUID) -> None:
    """Principals may read their own state; admins may read anyone's."""
    if not bearer.is_admin and bearer.principal_id != principal_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access this principal",
        )


def get_request_id(request: Request) -> Optional[str]:
    """Get request correlation ID (set by RequestIdMiddleware)."""
    return getattr(request.state, "request_id", None)
