"""
Auth boundary for the audit and telemetry APIs.

Tokens are issued by the platform auth service; this module only verifies
them (JWT with Authlib) and exposes the caller as ``UserInfo``.
"""

from enum import Enum
from typing import Any, cast

import structlog
from authlib.jose import JoseError, jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from ..settings import settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class Role(str, Enum):
    """Platform roles carried in the ``roles`` claim."""

    ADMIN = "ADMIN"
    BROKER = "BROKER"
    TRADER = "TRADER"
    TRADER_MM = "TRADER_MM"


class UserInfo(BaseModel):
    """User information from a verified access token."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    email: str | None = None
    roles: list[str] = Field(default_factory=list)
    tenant_id: str | None = None

    def has_role(self, role: Role | str) -> bool:
        value = role.value if isinstance(role, Role) else role
        return value in self.roles


class JWTService:
    """Verifies HS256 access tokens issued by the auth service."""

    def __init__(self, secret: str | None = None, algorithm: str | None = None):
        self.secret = secret or settings.jwt.secret_key
        self.algorithm = algorithm or settings.jwt.algorithm
        self.header = {"alg": self.algorithm}

    def create_access_token(
        self, subject: str, additional_claims: dict[str, Any] | None = None
    ) -> str:
        """Mint a token. Used by tests and local tooling."""
        data: dict[str, Any] = {"sub": subject, "type": "access"}
        if additional_claims:
            data.update(additional_claims)
        token = jwt.encode(self.header, data, self.secret)
        return token.decode("utf-8") if isinstance(token, bytes) else token

    def verify_token(self, token: str) -> dict[str, Any]:
        """Verify and decode token.

        Raises:
            HTTPException: If token is invalid or not an access token
        """
        try:
            claims_raw = jwt.decode(token, self.secret)
            claims_raw.validate()
            claims = cast(dict[str, Any], dict(claims_raw))
            if claims.get("type", "access") != "access":
                raise JoseError("Invalid token type")
            return claims
        except JoseError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: {e}",
                headers={"WWW-Authenticate": "Bearer"},
            )


jwt_service = JWTService()


def _claims_to_user_info(claims: dict[str, Any]) -> UserInfo:
    """Convert JWT claims to UserInfo."""
    roles = claims.get("roles")
    if roles is None and claims.get("role"):
        roles = [claims["role"]]
    return UserInfo(
        user_id=str(claims.get("sub", "")),
        email=claims.get("email"),
        roles=list(roles or []),
        tenant_id=claims.get("tenant_id"),
    )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserInfo:
    """Get current authenticated user from a Bearer token or the access_token cookie."""
    token = credentials.credentials if credentials and credentials.credentials else None
    if token is None:
        token = request.cookies.get("access_token")

    if token:
        claims = jwt_service.verify_token(token)
        user = _claims_to_user_info(claims)
        request.state.user_id = user.user_id
        return user

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )
