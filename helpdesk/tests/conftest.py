from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

from core.app import HelpDeskApp
from core.config import AppConfig, AuthConfig, DatabaseConfig, NotificationConfig, UploadConfig
from database.models import User
from services.identity_service import Principal
from services.ticket_service import TicketInput, TicketView
from utils.constants import ROLE_ADMIN, ROLE_AGENT, ROLE_USER
from utils.time import to_iso, utc_now

JWT_SECRET = "test-secret"


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    config = AppConfig(
        auth=AuthConfig(jwt_secret=JWT_SECRET),
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'helpdesk.db'}", lock_timeout_seconds=2),
        uploads=UploadConfig(storage_directory=str(tmp_path / "uploads")),
        notifications=NotificationConfig(poll_interval_seconds=0.05),
    )
    for name, value in overrides.items():
        setattr(config, name, value)
    return config


@pytest_asyncio.fixture
async def helpdesk(tmp_path: Path) -> AsyncIterator[HelpDeskApp]:
    app = HelpDeskApp(make_config(tmp_path))
    await app.start(run_dispatcher=False)
    yield app
    await app.close()


@pytest.fixture
def make_user(helpdesk: HelpDeskApp) -> Callable[..., Awaitable[Principal]]:
    async def _make(
        username: str,
        role: str = ROLE_USER,
        *,
        notify_email: bool = True,
        is_active: bool = True,
    ) -> Principal:
        now = to_iso(utc_now())
        user = User(
            id=str(uuid4()),
            username=username,
            email=f"{username}@example.com",
            role=role,
            is_active=is_active,
            notify_email=notify_email,
            created_at=now,
            updated_at=now,
        )
        await helpdesk.user_repo.create(user)
        return Principal(id=user.id, role=user.role, is_active=user.is_active)

    return _make


@pytest_asyncio.fixture
async def admin(make_user: Callable[..., Awaitable[Principal]]) -> Principal:
    return await make_user("root", ROLE_ADMIN)


@pytest_asyncio.fixture
async def agent(make_user: Callable[..., Awaitable[Principal]]) -> Principal:
    return await make_user("bob", ROLE_AGENT)


@pytest_asyncio.fixture
async def user_a(make_user: Callable[..., Awaitable[Principal]]) -> Principal:
    return await make_user("alice")


@pytest_asyncio.fixture
async def user_b(make_user: Callable[..., Awaitable[Principal]]) -> Principal:
    return await make_user("carol")


@pytest_asyncio.fixture
async def network(helpdesk: HelpDeskApp, admin: Principal) -> str:
    category = await helpdesk.categories.create(admin, "Network", "VPN, Wi-Fi and LAN issues")
    return category.id


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return make_config(tmp_path)


@pytest.fixture
def open_ticket(helpdesk: HelpDeskApp, network: str) -> Callable[..., Awaitable[TicketView]]:
    async def _open(principal: Principal, subject: str = "VPN down", **extra: Any) -> TicketView:
        data = TicketInput(
            subject=subject,
            description=extra.pop("description", "Cannot reach the office VPN since this morning."),
            category_id=extra.pop("category_id", network),
            **extra,
        )
        return await helpdesk.tickets.create(principal, data)

    return _open
