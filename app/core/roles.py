"""
app/core/roles.py
──────────────────
Role-based access control dependencies.

Roles (company-scoped, stored on Member.role):
  author  → company owner: billing, members, everything
  member  → create/edit workspace data; no billing
  viewer  → read-only

Usage:
    from app.core.roles import require_author

    @router.post("/payment/checkout",
                 dependencies=[Depends(require_author)])
    async def create_checkout(...):
        ...
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, status

from app.core.deps import get_current_member
from app.models.models import Member, MemberRole


# Role hierarchy (higher = more permissions)
_ROLE_LEVEL: dict[MemberRole, int] = {
    MemberRole.viewer: 1,
    MemberRole.member: 2,
    MemberRole.author: 3,
}


def _role_level(member: Member) -> int:
    """Get member's role level. Defaults to viewer if role not set."""
    try:
        return _ROLE_LEVEL.get(MemberRole(member.role), 1)
    except (ValueError, AttributeError):
        return 1


def require_role(minimum_role: MemberRole):
    """
    Returns a FastAPI dependency that enforces a minimum role.

    Example:
        dependencies=[Depends(require_role(MemberRole.author))]
    """
    async def _check(
        member: Member = Depends(get_current_member),
    ) -> Member:
        if _role_level(member) < _ROLE_LEVEL.get(minimum_role, 1):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "insufficient_role",
                    "message": f"This action requires the '{minimum_role.value}' role or higher.",
                    "your_role": MemberRole(member.role).value,
                    "required_role": minimum_role.value,
                },
            )
        return member

    return _check


require_author = require_role(MemberRole.author)
