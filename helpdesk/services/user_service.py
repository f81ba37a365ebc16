from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from database.models import User
from database.repositories import TicketRepository, UserRepository
from services.identity_service import Principal
from utils.constants import ROLE_ADMIN, ROLE_USER, ROLES, USERNAME_MAX_LENGTH, USERNAME_MIN_LENGTH
from utils.decorators import admin_only, staff_only
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _clean_username(value: Any) -> str:
    username = str(value or "").strip()
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters",
            field_name="username",
        )
    return username


def _clean_email(value: Any) -> str:
    email = str(value or "").strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Email must be a valid email address", field_name="email")
    return email


def _clean_role(value: Any) -> str:
    if value not in ROLES:
        raise ValidationError(f"Role must be one of {', '.join(ROLES)}", field_name="role")
    return str(value)


class UserService:
    def __init__(self, user_repo: UserRepository, ticket_repo: TicketRepository) -> None:
        self.user_repo = user_repo
        self.ticket_repo = ticket_repo

    async def _load(self, user_id: str) -> User:
        user = await self.user_repo.get_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def _ensure_unique(self, username: str | None, email: str | None, exclude_id: str | None = None) -> None:
        clash = await self.user_repo.find_conflicting(username, email, exclude_id=exclude_id)
        if not clash:
            return
        if username and clash.username.lower() == username.lower():
            raise ConflictError("Username already exists", field_name="username")
        raise ConflictError("Email already exists", field_name="email")

    async def _create(self, username: str, email: str, role: str) -> User:
        await self._ensure_unique(username, email)
        now = to_iso(utc_now())
        user = User(
            id=str(uuid4()),
            username=username,
            email=email,
            role=role,
            created_at=now,
            updated_at=now,
        )
        await self.user_repo.create(user)
        return user

    @admin_only()
    async def register(self, principal: Principal, username: str, email: str, role: str = ROLE_USER) -> User:
        user = await self._create(_clean_username(username), _clean_email(email), _clean_role(role))
        LOGGER.info("User registered. user=%s role=%s by=%s", user.id, user.role, principal.id)
        return user

    async def bootstrap_admin(self, username: str | None, email: str | None) -> User | None:
        """Create the first admin account when the directory is still empty."""
        if not username or not email:
            return None
        if await self.user_repo.count() > 0:
            return None
        user = await self._create(_clean_username(username), _clean_email(email), ROLE_ADMIN)
        LOGGER.info("Bootstrap admin created. user=%s username=%s", user.id, user.username)
        return user

    async def get(self, principal: Principal, user_id: str) -> User:
        if not principal.is_staff and principal.id != user_id:
            raise ForbiddenError("Access denied")
        return await self._load(user_id)

    @admin_only()
    async def list(
        self,
        principal: Principal,
        role: str | None = None,
        search: str | None = None,
        is_active: bool | None = None,
    ) -> list[User]:
        if role:
            _clean_role(role)
        return await self.user_repo.search(role=role, term=(search or "").strip() or None, is_active=is_active)

    @staff_only()
    async def list_agents(self, principal: Principal) -> list[User]:
        return await self.user_repo.list_staff()

    async def update(self, principal: Principal, user_id: str, patch: Mapping[str, Any]) -> User:
        if not principal.is_admin and principal.id != user_id:
            raise ForbiddenError("Access denied")
        user = await self._load(user_id)

        changes = dict(patch)
        if not principal.is_admin:
            # Role and activation are admin-managed.
            changes.pop("role", None)
            changes.pop("is_active", None)

        if changes.get("username") is not None:
            username = _clean_username(changes["username"])
            await self._ensure_unique(username, None, exclude_id=user.id)
            user.username = username
        if changes.get("email") is not None:
            email = _clean_email(changes["email"])
            await self._ensure_unique(None, email, exclude_id=user.id)
            user.email = email
        if changes.get("role") is not None:
            user.role = _clean_role(changes["role"])
        if changes.get("is_active") is not None:
            if user.id == principal.id and not changes["is_active"]:
                raise ValidationError("Cannot deactivate your own account", field_name="isActive")
            user.is_active = bool(changes["is_active"])
        if changes.get("notify_email") is not None:
            user.notify_email = bool(changes["notify_email"])
        if changes.get("notify_browser") is not None:
            user.notify_browser = bool(changes["notify_browser"])

        user.updated_at = to_iso(utc_now())
        await self.user_repo.update(user)
        LOGGER.info("User updated. user=%s by=%s", user.id, principal.id)
        return user

    @admin_only()
    async def toggle_active(self, principal: Principal, user_id: str) -> User:
        user = await self._load(user_id)
        if user.id == principal.id:
            raise ValidationError("Cannot deactivate your own account")
        user.is_active = not user.is_active
        user.updated_at = to_iso(utc_now())
        await self.user_repo.update(user)
        LOGGER.info(
            "User %s. user=%s by=%s", "activated" if user.is_active else "deactivated", user.id, principal.id
        )
        return user

    @admin_only()
    async def delete(self, principal: Principal, user_id: str) -> None:
        user = await self._load(user_id)
        if user.id == principal.id:
            raise ValidationError("Cannot delete your own account")
        linked = await self.ticket_repo.count_linked_to_user(user.id)
        if linked > 0:
            raise ConflictError(f"Cannot delete user. They have {linked} associated ticket(s)")
        await self.user_repo.delete(user.id)
        LOGGER.info("User deleted. user=%s username=%s by=%s", user.id, user.username, principal.id)
