"""RBAC (Role-Based Access Control) by platform role.

Roles are flat: client, lawyer, admin. Endpoints list the roles they accept.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException

from lexbill.api.auth import ROLES, CurrentUser, get_current_user


def require_role(*roles: str) -> Callable[..., CurrentUser]:
    """Create a dependency that admits only users holding one of roles.

    Usage:
        @router.get("/something")
        def endpoint(user: CurrentUser = Depends(require_role("lawyer", "admin"))):
            ...
    """
    unknown = [r for r in roles if r not in ROLES]
    if not roles or unknown:
        raise ValueError(f"Invalid roles: {unknown or roles}")

    allowed = frozenset(roles)

    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user

    return dependency
