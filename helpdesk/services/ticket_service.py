from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from typing import Any
from uuid import uuid4

from core.config import AppConfig
from core.errors import (
    DuplicateVoteError,
    ForbiddenError,
    InvalidReferenceError,
    NotFoundError,
    ValidationError,
)
from database.models import Attachment, Category, Ticket, User, Vote
from database.repositories import (
    CategoryRepository,
    CounterRepository,
    TicketQuery,
    TicketRepository,
    UserRepository,
    VoteRepository,
)
from services.cache import CacheBackend, hold_lock
from services.identity_service import Principal
from services.notification_service import NotificationService
from utils.constants import (
    DEFAULT_PRIORITY,
    DESCRIPTION_MAX_LENGTH,
    NOTIFY_ASSIGNED,
    NOTIFY_CREATED,
    NOTIFY_STATUS_CHANGED,
    PRIORITY_LEVELS,
    SUBJECT_MAX_LENGTH,
    TAG_MAX_LENGTH,
    TAGS_MAX_COUNT,
    TICKET_NUMBER_COUNTER,
    TICKET_NUMBER_PREFIX,
    TICKET_NUMBER_WIDTH,
    TICKET_SORT_FIELDS,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_OPEN,
    TICKET_STATUS_RESOLVED,
    TICKET_STATUSES,
    VOTE_TYPES,
)
from utils.decorators import staff_only
from utils.rate_limit import DistributedRateLimiter
from utils.time import parse_datetime, to_iso, utc_now

LOGGER = logging.getLogger(__name__)


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

STAFF_PATCH_FIELDS = frozenset(
    {
        "subject",
        "description",
        "status",
        "priority",
        "category_id",
        "assigned_to",
        "tags",
        "due_date",
        "estimated_hours",
        "actual_hours",
    }
)
USER_PATCH_FIELDS = frozenset({"subject", "description", "tags"})


def format_ticket_number(sequence: int) -> str:
    return f"{TICKET_NUMBER_PREFIX}-{sequence:0{TICKET_NUMBER_WIDTH}d}"


def require_text(value: Any, field_name: str, label: str, max_length: int) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{label} is required", field_name=field_name)
    if len(text) > max_length:
        raise ValidationError(f"{label} cannot exceed {max_length} characters", field_name=field_name)
    return text


def clean_tags(tags: Iterable[Any] | None) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        raise ValidationError("Tags must be a list", field_name="tags")
    cleaned = [str(tag).strip() for tag in tags]
    cleaned = [tag for tag in cleaned if tag]
    if len(cleaned) > TAGS_MAX_COUNT:
        raise ValidationError(f"A ticket can have at most {TAGS_MAX_COUNT} tags", field_name="tags")
    for tag in cleaned:
        if len(tag) > TAG_MAX_LENGTH:
            raise ValidationError(f"Tags cannot exceed {TAG_MAX_LENGTH} characters", field_name="tags")
    return cleaned


def clean_priority(priority: Any) -> str:
    if priority is None or priority == "":
        return DEFAULT_PRIORITY
    if priority not in PRIORITY_LEVELS:
        raise ValidationError(f"Priority must be one of {', '.join(PRIORITY_LEVELS)}", field_name="priority")
    return str(priority)


def clean_status(status: Any) -> str:
    if status not in TICKET_STATUSES:
        raise ValidationError(f"Status must be one of {', '.join(TICKET_STATUSES)}", field_name="status")
    return str(status)


def clean_hours(value: Any, field_name: str) -> float | None:
    if value is None:
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Hours must be a number", field_name=field_name) from exc
    if hours < 0 or math.isnan(hours):
        raise ValidationError("Hours cannot be negative", field_name=field_name)
    return hours


def clean_due_date(value: Any, *, require_future: bool = True) -> str | None:
    if value is None or value == "":
        return None
    try:
        parsed = parse_datetime(value)
    except ValueError as exc:
        raise ValidationError("Due date is not a valid date", field_name="dueDate") from exc
    if require_future and parsed is not None and parsed <= utc_now():
        raise ValidationError("Due date must be in the future", field_name="dueDate")
    return to_iso(parsed)


@dataclass(slots=True)
class TicketInput:
    subject: str
    description: str
    category_id: str
    priority: str | None = None
    tags: list[str] | None = None
    due_date: str | None = None
    estimated_hours: float | None = None
    attachments: list[Attachment] = field(default_factory=list)


@dataclass(slots=True)
class TicketPatch:
    """Fields a principal is allowed to change; untouched fields stay ``UNSET``."""

    subject: Any = UNSET
    description: Any = UNSET
    status: Any = UNSET
    priority: Any = UNSET
    category_id: Any = UNSET
    assigned_to: Any = UNSET
    tags: Any = UNSET
    due_date: Any = UNSET
    estimated_hours: Any = UNSET
    actual_hours: Any = UNSET

    def changes(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}


def project_patch(principal: Principal, raw: Mapping[str, Any]) -> TicketPatch:
    """Keep only the fields the principal's role may write; the rest is dropped silently."""
    allowed = STAFF_PATCH_FIELDS if principal.is_staff else USER_PATCH_FIELDS
    return TicketPatch(**{name: value for name, value in raw.items() if name in allowed})


@dataclass(slots=True)
class TicketFilters:
    status: str | None = None
    category_id: str | None = None
    priority: str | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    search: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    mine: bool = False
    sort_by: str = "createdAt"
    sort_order: str = "desc"


@dataclass(slots=True)
class TicketView:
    ticket: Ticket
    category: Category | None = None
    creator: User | None = None
    assignee: User | None = None
    resolver: User | None = None


@dataclass(slots=True)
class TicketPage:
    items: list[TicketView]
    total: int
    page: int
    page_size: int
    status_counts: dict[str, int]

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total

    @property
    def has_prev(self) -> bool:
        return self.page > 1


@dataclass(slots=True)
class VoteTally:
    upvotes: int
    downvotes: int
    user_vote: str | None


@dataclass(slots=True)
class TicketServiceDeps:
    ticket_repo: TicketRepository
    category_repo: CategoryRepository
    user_repo: UserRepository
    vote_repo: VoteRepository
    counter_repo: CounterRepository
    cache: CacheBackend
    notifications: NotificationService


class TicketService:
    def __init__(self, config: AppConfig, deps: TicketServiceDeps) -> None:
        self.config = config
        self.deps = deps
        self.rate_limiter = DistributedRateLimiter(deps.cache)

    def ticket_lock(self, ticket_id: str) -> Any:
        return hold_lock(self.deps.cache, f"ticket:{ticket_id}", self.config.database.lock_timeout_seconds)

    async def load(self, ticket_id: str) -> Ticket:
        ticket = await self.deps.ticket_repo.get_by_id(ticket_id)
        if not ticket:
            raise NotFoundError("Ticket not found")
        return ticket

    async def expand(self, tickets: list[Ticket]) -> list[TicketView]:
        categories = await self.deps.category_repo.get_many(t.category_id for t in tickets)
        users = await self.deps.user_repo.get_many(
            user_id for t in tickets for user_id in (t.created_by, t.assigned_to, t.resolved_by)
        )
        return [
            TicketView(
                ticket=t,
                category=categories.get(t.category_id),
                creator=users.get(t.created_by),
                assignee=users.get(t.assigned_to) if t.assigned_to else None,
                resolver=users.get(t.resolved_by) if t.resolved_by else None,
            )
            for t in tickets
        ]

    async def _view(self, ticket: Ticket) -> TicketView:
        views = await self.expand([ticket])
        return views[0]

    async def _staff_user(self, user_id: str, message: str) -> User:
        user = await self.deps.user_repo.get_by_id(user_id)
        if not user or not user.is_staff:
            raise InvalidReferenceError(message, field_name="assignedTo")
        return user

    async def create(self, principal: Principal, data: TicketInput) -> TicketView:
        subject = require_text(data.subject, "subject", "Subject", SUBJECT_MAX_LENGTH)
        description = require_text(data.description, "description", "Description", DESCRIPTION_MAX_LENGTH)
        priority = clean_priority(data.priority)
        tags = clean_tags(data.tags)
        due_date = clean_due_date(data.due_date)
        estimated_hours = clean_hours(data.estimated_hours, "estimatedHours")
        if len(data.attachments) > self.config.uploads.max_files_per_ticket:
            raise ValidationError(
                f"Too many files. Maximum is {self.config.uploads.max_files_per_ticket} files.",
                field_name="attachments",
            )

        category = await self.deps.category_repo.get(data.category_id) if data.category_id else None
        if not category or not category.is_active:
            raise InvalidReferenceError("Invalid category", field_name="category")

        await self.rate_limiter.enforce(
            f"ticket:hourly:{principal.id}",
            limit=self.config.security.ticket_creation_max_per_hour,
            window_seconds=3600,
            message="Hourly ticket creation limit exceeded.",
        )

        sequence = await self.deps.counter_repo.next_value(TICKET_NUMBER_COUNTER)
        now = to_iso(utc_now())
        ticket = Ticket(
            id=str(uuid4()),
            sequence=sequence,
            ticket_number=format_ticket_number(sequence),
            subject=subject,
            description=description,
            category_id=category.id,
            created_by=principal.id,
            status=TICKET_STATUS_OPEN,
            priority=priority,
            tags=tags,
            attachments=list(data.attachments),
            due_date=due_date,
            estimated_hours=estimated_hours,
            created_at=now,
            updated_at=now,
        )
        await self.deps.ticket_repo.create(ticket)
        LOGGER.info("Ticket created. ticket=%s number=%s by=%s", ticket.id, ticket.ticket_number, principal.id)

        view = await self._view(ticket)
        staff = await self.deps.user_repo.list_staff(notify_email_only=True)
        await self.deps.notifications.emit_many(
            NOTIFY_CREATED, ticket, staff, actor=view.creator, category_name=category.name
        )
        return view

    async def list(
        self,
        principal: Principal,
        filters: TicketFilters | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> TicketPage:
        filters = filters or TicketFilters()
        if filters.status and filters.status not in TICKET_STATUSES:
            raise ValidationError("Unknown status filter", field_name="status")
        if filters.priority and filters.priority not in PRIORITY_LEVELS:
            raise ValidationError("Unknown priority filter", field_name="priority")
        if filters.sort_by not in TICKET_SORT_FIELDS:
            raise ValidationError(
                f"sortBy must be one of {', '.join(TICKET_SORT_FIELDS)}", field_name="sortBy"
            )
        if filters.sort_order not in {"asc", "desc"}:
            raise ValidationError("sortOrder must be asc or desc", field_name="sortOrder")
        try:
            created_from = to_iso(parse_datetime(filters.date_from))
            created_to = to_iso(parse_datetime(filters.date_to, end_of_day=True))
        except ValueError as exc:
            raise ValidationError("Invalid date range", field_name="dateFrom") from exc

        page = max(int(page or 1), 1)
        size = page_size or self.config.tickets.default_page_size
        size = min(max(int(size), 1), self.config.tickets.max_page_size)

        query = TicketQuery(
            scope_user_id=None if principal.is_staff else principal.id,
            mine_user_id=principal.id if principal.is_staff and filters.mine else None,
            status=filters.status,
            category_id=filters.category_id,
            priority=filters.priority,
            assigned_to=filters.assigned_to,
            created_by=filters.created_by,
            search=(filters.search or "").strip() or None,
            created_from=created_from,
            created_to=created_to,
            sort_by=filters.sort_by,
            descending=filters.sort_order == "desc",
            limit=size,
            offset=(page - 1) * size,
        )
        tickets, total = await self.deps.ticket_repo.search(query)
        status_counts = await self.deps.ticket_repo.status_counts(
            created_by=None if principal.is_staff else principal.id
        )
        return TicketPage(
            items=await self.expand(tickets),
            total=total,
            page=page,
            page_size=size,
            status_counts=status_counts,
        )

    async def get(self, principal: Principal, ticket_id: str) -> TicketView:
        ticket = await self.load(ticket_id)
        self.ensure_can_view(principal, ticket)
        return await self._view(ticket)

    def ensure_can_view(self, principal: Principal, ticket: Ticket) -> None:
        if (
            self.config.tickets.restrict_user_visibility
            and not principal.is_staff
            and ticket.created_by != principal.id
        ):
            raise ForbiddenError("Access denied")

    async def update(self, principal: Principal, ticket_id: str, raw_patch: Mapping[str, Any]) -> TicketView:
        async with self.ticket_lock(ticket_id):
            ticket = await self.load(ticket_id)
            if not principal.is_staff and ticket.created_by != principal.id:
                raise ForbiddenError("Access denied")

            changes = project_patch(principal, raw_patch).changes()
            previous_status = ticket.status
            previous_assignee = ticket.assigned_to

            if "subject" in changes:
                ticket.subject = require_text(changes["subject"], "subject", "Subject", SUBJECT_MAX_LENGTH)
            if "description" in changes:
                ticket.description = require_text(
                    changes["description"], "description", "Description", DESCRIPTION_MAX_LENGTH
                )
            if "tags" in changes:
                ticket.tags = clean_tags(changes["tags"])
            if "priority" in changes:
                ticket.priority = clean_priority(changes["priority"])
            if "category_id" in changes:
                category = await self.deps.category_repo.get(str(changes["category_id"] or ""))
                if not category:
                    raise InvalidReferenceError("Invalid category", field_name="category")
                ticket.category_id = category.id
            if "assigned_to" in changes:
                assignee_id = changes["assigned_to"] or None
                if assignee_id:
                    await self._staff_user(assignee_id, "Invalid assignee")
                ticket.assigned_to = assignee_id
            if "due_date" in changes:
                ticket.due_date = clean_due_date(changes["due_date"], require_future=False)
            if "estimated_hours" in changes:
                ticket.estimated_hours = clean_hours(changes["estimated_hours"], "estimatedHours")
            if "actual_hours" in changes:
                ticket.actual_hours = clean_hours(changes["actual_hours"], "actualHours")

            now = to_iso(utc_now())
            if "status" in changes:
                ticket.status = clean_status(changes["status"])
                if ticket.status == TICKET_STATUS_RESOLVED and not ticket.is_resolved:
                    ticket.is_resolved = True
                    ticket.resolved_at = now
                    ticket.resolved_by = principal.id

            ticket.updated_at = now
            await self.deps.ticket_repo.save(ticket)

        LOGGER.info(
            "Ticket updated. ticket=%s number=%s by=%s fields=%s",
            ticket.id,
            ticket.ticket_number,
            principal.id,
            ",".join(sorted(changes)),
        )
        view = await self._view(ticket)
        if ticket.status != previous_status:
            await self.deps.notifications.emit(NOTIFY_STATUS_CHANGED, ticket, view.creator)
        if ticket.assigned_to and ticket.assigned_to != previous_assignee:
            await self.deps.notifications.emit(NOTIFY_ASSIGNED, ticket, view.assignee)
        return view

    @staff_only()
    async def assign(self, principal: Principal, ticket_id: str, assignee_id: str | None) -> TicketView:
        async with self.ticket_lock(ticket_id):
            ticket = await self.load(ticket_id)
            if assignee_id:
                await self._staff_user(assignee_id, "Invalid assignee")
            ticket.assigned_to = assignee_id or None
            if ticket.assigned_to and ticket.status == TICKET_STATUS_OPEN:
                ticket.status = TICKET_STATUS_IN_PROGRESS
            ticket.updated_at = to_iso(utc_now())
            await self.deps.ticket_repo.save(ticket)

        LOGGER.info(
            "Ticket %s. ticket=%s assignee=%s by=%s",
            "assigned" if ticket.assigned_to else "unassigned",
            ticket.id,
            ticket.assigned_to,
            principal.id,
        )
        view = await self._view(ticket)
        if ticket.assigned_to:
            await self.deps.notifications.emit(NOTIFY_ASSIGNED, ticket, view.assignee)
        return view

    async def vote(self, principal: Principal, ticket_id: str, vote_type: str) -> VoteTally:
        if vote_type not in VOTE_TYPES:
            raise ValidationError("Invalid vote type", field_name="type")
        async with self.ticket_lock(ticket_id):
            ticket = await self.load(ticket_id)
            now = to_iso(utc_now())
            existing = await self.deps.vote_repo.get(ticket.id, principal.id)
            if existing is None:
                await self.deps.vote_repo.add(
                    Vote(ticket_id=ticket.id, user_id=principal.id, vote_type=vote_type, voted_at=now)
                )
            elif existing.vote_type == vote_type:
                raise DuplicateVoteError("You have already voted", field_name="type")
            else:
                existing.vote_type = vote_type
                existing.voted_at = now
                await self.deps.vote_repo.change(existing)
            upvotes, downvotes = await self.deps.ticket_repo.refresh_vote_totals(ticket.id, now)

        LOGGER.debug("Vote recorded. ticket=%s user=%s type=%s", ticket.id, principal.id, vote_type)
        return VoteTally(upvotes=upvotes, downvotes=downvotes, user_vote=vote_type)
