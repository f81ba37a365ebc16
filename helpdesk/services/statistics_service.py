from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from core.errors import ForbiddenError, NotFoundError, ValidationError
from database.models import User
from database.repositories import StatisticsRepository, TicketRepository, UserRepository
from services.identity_service import Principal
from services.ticket_service import TicketService, TicketView
from utils.constants import (
    PRIORITY_LEVELS,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_OPEN,
    TICKET_STATUS_RESOLVED,
)
from utils.decorators import staff_only
from utils.time import parse_datetime, to_iso


@dataclass(slots=True)
class StatisticsOverview:
    total_tickets: int = 0
    open_tickets: int = 0
    in_progress_tickets: int = 0
    resolved_tickets: int = 0
    closed_tickets: int = 0
    priority_counts: dict[str, int] = field(default_factory=dict)
    category_counts: list[dict[str, Any]] = field(default_factory=list)
    agent_stats: list[dict[str, Any]] = field(default_factory=list)

    @property
    def resolution_rate(self) -> float:
        if self.total_tickets == 0:
            return 0.0
        return round((self.resolved_tickets + self.closed_tickets) / self.total_tickets, 4)


@dataclass(slots=True)
class UserDashboard:
    user: User
    created_counts: dict[str, int]
    assigned_counts: dict[str, int] | None
    recent_tickets: list[TicketView]


class StatisticsService:
    """Read-only rollups over the ticket store."""

    def __init__(
        self,
        stats_repo: StatisticsRepository,
        ticket_repo: TicketRepository,
        user_repo: UserRepository,
        tickets: TicketService,
    ) -> None:
        self.stats_repo = stats_repo
        self.ticket_repo = ticket_repo
        self.user_repo = user_repo
        self.tickets = tickets

    @staff_only()
    async def overview(
        self,
        principal: Principal,
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> StatisticsOverview:
        try:
            start = to_iso(parse_datetime(date_from))
            end = to_iso(parse_datetime(date_to, end_of_day=True))
        except ValueError as exc:
            raise ValidationError("Invalid date range", field_name="dateFrom") from exc

        status_rows = await self.stats_repo.status_counts(start, end)
        by_status = {row["status"]: int(row["count"]) for row in status_rows}
        priority_rows = await self.stats_repo.priority_counts(start, end)
        by_priority = {level: 0 for level in PRIORITY_LEVELS}
        for row in priority_rows:
            by_priority[row["priority"]] = int(row["count"])

        categories = [
            {"id": row["category_id"], "name": row["name"], "count": int(row["count"])}
            for row in await self.stats_repo.category_counts(start, end)
        ]
        agents = [
            {
                "id": row["user_id"],
                "username": row["username"],
                "totalAssigned": int(row["total_assigned"]),
                "resolved": int(row["resolved"] or 0),
                "closed": int(row["closed"] or 0),
            }
            for row in await self.stats_repo.agent_counts(start, end)
        ]
        return StatisticsOverview(
            total_tickets=sum(by_status.values()),
            open_tickets=by_status.get(TICKET_STATUS_OPEN, 0),
            in_progress_tickets=by_status.get(TICKET_STATUS_IN_PROGRESS, 0),
            resolved_tickets=by_status.get(TICKET_STATUS_RESOLVED, 0),
            closed_tickets=by_status.get(TICKET_STATUS_CLOSED, 0),
            priority_counts=by_priority,
            category_counts=categories,
            agent_stats=agents,
        )

    async def user_dashboard(self, principal: Principal, user_id: str) -> UserDashboard:
        if not principal.is_staff and principal.id != user_id:
            raise ForbiddenError("Access denied")
        user = await self.user_repo.get_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")

        created = await self.ticket_repo.status_counts(created_by=user.id)
        assigned = await self.ticket_repo.status_counts(assigned_to=user.id) if user.is_staff else None
        recent = await self.ticket_repo.list_recent_for_user(user.id, include_assigned=user.is_staff, limit=5)
        return UserDashboard(
            user=user,
            created_counts=created,
            assigned_counts=assigned,
            recent_tickets=await self.tickets.expand(recent),
        )
