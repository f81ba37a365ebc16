from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any, TypeVar

from core.errors import ForbiddenError
from utils.constants import ROLE_ADMIN, STAFF_ROLES

F = TypeVar("F", bound=Callable[..., Any])


def requires_role(*roles: str, message: str | None = None) -> Callable[[F], F]:
    """Guard an async service method whose first argument after ``self`` is the principal."""
    allowed = frozenset(roles)

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self: Any, principal: Any, *args: Any, **kwargs: Any) -> Any:
            if principal.role not in allowed:
                raise ForbiddenError(message) if message else ForbiddenError()
            return await func(self, principal, *args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


def staff_only() -> Callable[[F], F]:
    return requires_role(*STAFF_ROLES, message="Access denied. Agent or admin role required.")


def admin_only() -> Callable[[F], F]:
    return requires_role(ROLE_ADMIN, message="Access denied. Admin role required.")
