from __future__ import annotations

import logging
import re
from uuid import uuid4

from core.errors import ConflictError, NotFoundError, ValidationError
from database.models import Category
from database.repositories import CategoryRepository, TicketRepository
from services.identity_service import Principal
from utils.constants import (
    CATEGORY_DESCRIPTION_MAX_LENGTH,
    CATEGORY_NAME_MAX_LENGTH,
    DEFAULT_CATEGORY_COLOR,
)
from utils.decorators import admin_only
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

COLOR_PATTERN = re.compile(r"^#[0-9A-F]{6}$", re.IGNORECASE)


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Category name is required.", field_name="name")
    if len(cleaned) > CATEGORY_NAME_MAX_LENGTH:
        raise ValidationError(
            f"Category name cannot exceed {CATEGORY_NAME_MAX_LENGTH} characters.", field_name="name"
        )
    return cleaned


def _clean_description(description: str | None) -> str:
    cleaned = (description or "").strip()
    if len(cleaned) > CATEGORY_DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"Description cannot exceed {CATEGORY_DESCRIPTION_MAX_LENGTH} characters.",
            field_name="description",
        )
    return cleaned


def _clean_color(color: str | None) -> str:
    if color is None or color == "":
        return DEFAULT_CATEGORY_COLOR
    if not COLOR_PATTERN.match(color):
        raise ValidationError("Color must be a hex value such as #1976d2.", field_name="color")
    return color


def parse_active_filter(value: str | bool | None) -> bool | None:
    """Map the ``isActive`` query value to a repository filter; ``"all"`` disables it."""
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text == "all":
        return None
    return text == "true"


class CategoryService:
    def __init__(self, category_repo: CategoryRepository, ticket_repo: TicketRepository) -> None:
        self.category_repo = category_repo
        self.ticket_repo = ticket_repo

    async def list(self, principal: Principal, active: str | bool | None = "true") -> list[Category]:
        return await self.category_repo.list(is_active=parse_active_filter(active))

    async def get(self, principal: Principal, category_id: str) -> Category:
        category = await self.category_repo.get(category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    @admin_only()
    async def create(
        self,
        principal: Principal,
        name: str,
        description: str | None = None,
        color: str | None = None,
    ) -> Category:
        clean_name = _clean_name(name)
        if await self.category_repo.find_by_name(clean_name):
            raise ConflictError("Category already exists", field_name="name")

        now = to_iso(utc_now())
        category = Category(
            id=str(uuid4()),
            name=clean_name,
            description=_clean_description(description),
            color=_clean_color(color),
            is_active=True,
            created_by=principal.id,
            created_at=now,
            updated_at=now,
        )
        await self.category_repo.create(category)
        LOGGER.info("Category created. id=%s name=%s by=%s", category.id, category.name, principal.id)
        return category

    @admin_only()
    async def update(
        self,
        principal: Principal,
        category_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        color: str | None = None,
        is_active: bool | None = None,
    ) -> Category:
        category = await self.get(principal, category_id)
        if name is not None:
            clean_name = _clean_name(name)
            if clean_name.lower() != category.name.lower() and await self.category_repo.find_by_name(
                clean_name, exclude_id=category.id
            ):
                raise ConflictError("Category name already exists", field_name="name")
            category.name = clean_name
        if description is not None:
            category.description = _clean_description(description)
        if color is not None:
            category.color = _clean_color(color)
        if is_active is not None:
            category.is_active = bool(is_active)
        category.updated_at = to_iso(utc_now())
        await self.category_repo.update(category)
        LOGGER.info("Category updated. id=%s by=%s", category.id, principal.id)
        return category

    @admin_only()
    async def delete(self, principal: Principal, category_id: str) -> None:
        category = await self.get(principal, category_id)
        in_use = await self.ticket_repo.count_by_category(category.id)
        if in_use > 0:
            raise ConflictError(f"Cannot delete category. It's being used by {in_use} ticket(s)")
        await self.category_repo.delete(category.id)
        LOGGER.info("Category deleted. id=%s name=%s by=%s", category.id, category.name, principal.id)

    @admin_only()
    async def toggle_active(self, principal: Principal, category_id: str) -> Category:
        category = await self.get(principal, category_id)
        category.is_active = not category.is_active
        category.updated_at = to_iso(utc_now())
        await self.category_repo.update(category)
        LOGGER.info(
            "Category %s. id=%s by=%s",
            "activated" if category.is_active else "deactivated",
            category.id,
            principal.id,
        )
        return category
