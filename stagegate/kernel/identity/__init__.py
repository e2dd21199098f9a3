"""
Bearer token identity.
"""

from stagegate.kernel.identity.jwt import (
    AccessTokenPayload,
    JWTManager,
    Role,
    create_access_token,
    verify_access_token,
)

__all__ = [
    "AccessTokenPayload",
    "JWTManager",
    "Role",
    "create_access_token",
    "verify_access_token",
]
