"""
Auth boundary: token verification and role checks.
"""

from .core import JWTService, Role, UserInfo, get_current_user
from .rbac_dependencies import RoleChecker, require_any_role, require_role

__all__ = [
    "JWTService",
    "Role",
    "UserInfo",
    "get_current_user",
    "RoleChecker",
    "require_any_role",
    "require_role",
]
