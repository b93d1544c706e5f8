from __future__ import annotations

import math
from typing import Iterable, Optional

from quillpress.service.errors import InsufficientPermission

ROLE_HIERARCHY: dict[str, int] = {
    "user": 0,
    "collaborator": 1,
    "admin": 2,
}


def role_rank(role: Optional[str]) -> int:
    return ROLE_HIERARCHY.get(role or "", -1)


def has_permission(actual_role: Optional[str], required_role: str) -> bool:
    """True when ``actual_role`` ranks at or above ``required_role``.

    Unknown actual roles rank below everything; unknown required roles rank
    above everything, so typos deny.
    """
    required = ROLE_HIERARCHY.get(required_role, math.inf)
    return role_rank(actual_role) >= required


def require_role(actual_role: Optional[str], required_role: str) -> None:
    if not has_permission(actual_role, required_role):
        raise InsufficientPermission(detail={"required_role": required_role})


def is_valid_role(role: str) -> bool:
    return role in ROLE_HIERARCHY


def is_admin_email(email: Optional[str], admin_emails: Iterable[str]) -> bool:
    if not email:
        return False
    needle = email.strip().lower()
    return any(needle == candidate.strip().lower() for candidate in admin_emails)
