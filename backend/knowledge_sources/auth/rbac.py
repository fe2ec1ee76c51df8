"""
Role-Based Access Control (RBAC)

Role hierarchy (highest → lowest privilege):
    super_admin > org_admin > instructor > student

Usage:
    @router.delete("/sources/{source_id}")
    async def delete_source(
        source_id: UUID,
        user: TokenPayload = Depends(require_role("instructor")),
    ): ...

The dependency raises 403 if the user's role is below the requirement and
otherwise passes the full TokenPayload through to the route.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, status

from knowledge_sources.auth.token import ROLES, TokenPayload, get_current_user

logger = logging.getLogger(__name__)

_ROLE_ORDER: dict[str, int] = {role: rank for rank, role in enumerate(ROLES)}


def has_role(user_role: str, required_role: str) -> bool:
    """Return True if user_role meets or exceeds required_role."""
    return _ROLE_ORDER.get(user_role, -1) >= _ROLE_ORDER.get(required_role, 999)


def require_role(minimum_role: str):
    if minimum_role not in _ROLE_ORDER:
        raise ValueError(
            f"Invalid minimum_role={minimum_role!r}. Valid values: {list(_ROLE_ORDER)}"
        )

    async def _dependency(
        user: Annotated[TokenPayload, Depends(get_current_user)],
    ) -> TokenPayload:
        if not has_role(user.role, minimum_role):
            logger.info(
                "RBAC denied | tenant=%s user=%s role=%s required=%s",
                user.tenant_id, user.sub, user.role, minimum_role,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=(
                    f"Insufficient permissions. "
                    f"Required: '{minimum_role}', your role: '{user.role}'."
                ),
            )
        return user

    return _dependency


RequireStudent    = Depends(require_role("student"))
RequireInstructor = Depends(require_role("instructor"))
