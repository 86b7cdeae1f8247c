from __future__ import annotations

from typing import Iterable

from w9mail.service.errors import BadRequestError, ForbiddenError
from w9mail.service.principal import Principal
from w9mail.storage.models import Role

ALL_ROLES = frozenset({Role.ADMIN, Role.DEV, Role.USER})


def require_password_current(principal: Principal) -> Principal:
    if principal.must_change_password:
        raise ForbiddenError(
            "password change required", detail={"must_change_password": True}
        )
    return principal


def require_role(principal: Principal, role: Role) -> Principal:
    if principal.role != role:
        raise ForbiddenError(f"{role.value} access required")
    return principal


def require_role_in(principal: Principal, roles: Iterable[Role]) -> Principal:
    if principal.role not in set(roles):
        raise ForbiddenError("role not permitted")
    return principal


def ensure_not_self(principal: Principal, target_user_id: str) -> None:
    """Admins may not delete their own user row."""
    if principal.id == target_user_id:
        raise BadRequestError("cannot delete your own account")
