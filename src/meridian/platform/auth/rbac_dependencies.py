"""
FastAPI dependencies for role-based authorization
"""

from enum import Enum
from functools import lru_cache

import structlog
from fastapi import Depends, HTTPException, status

from meridian.platform.auth.core import Role, UserInfo, get_current_user

logger = structlog.get_logger(__name__)


class RoleMode(str, Enum):
    """How to evaluate multiple roles"""

    ALL = "all"
    ANY = "any"


class RoleChecker:
    """
    Dependency class for checking roles.

    Roles come from the verified token; the role table itself is owned by
    the auth service.
    """

    def __init__(
        self,
        roles: list[str],
        mode: RoleMode = RoleMode.ANY,
        error_message: str | None = None,
    ):
        self.roles = roles
        self.mode = mode
        self.error_message = error_message or f"Role required: {roles}"

    async def __call__(self, current_user: UserInfo = Depends(get_current_user)) -> UserInfo:
        """Check if current user has required roles"""
        user_roles = set(current_user.roles)

        if self.mode == RoleMode.ALL:
            has_role = all(role in user_roles for role in self.roles)
        else:
            has_role = any(role in user_roles for role in self.roles)

        if not has_role:
            logger.warning(
                "rbac.role_check_failed",
                user_id=current_user.user_id,
                required=self.roles,
                mode=self.mode.value,
                has=sorted(user_roles),
            )
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=self.error_message)

        return current_user


@lru_cache(maxsize=None)
def _cached_role_checker(
    roles: tuple[str, ...],
    mode: RoleMode,
    error_message: str | None,
) -> RoleChecker:
    return RoleChecker(roles=list(roles), mode=mode, error_message=error_message)


def _role_values(roles: tuple[Role | str, ...]) -> tuple[str, ...]:
    return tuple(r.value if isinstance(r, Role) else r for r in roles)


def require_role(role: Role | str, error_message: str | None = None) -> RoleChecker:
    """Require a single role"""
    return _cached_role_checker(_role_values((role,)), RoleMode.ALL, error_message)


def require_any_role(*roles: Role | str, error_message: str | None = None) -> RoleChecker:
    """Require any of the specified roles"""
    return _cached_role_checker(_role_values(roles), RoleMode.ANY, error_message)
