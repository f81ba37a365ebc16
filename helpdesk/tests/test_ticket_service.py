from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from core.errors import (
    ConflictError,
    DuplicateVoteError,
    ForbiddenError,
    InvalidReferenceError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from services.identity_service import Principal
from services.ticket_service import TicketFilters, TicketInput, project_patch
from utils.constants import ROLE_USER
from utils.time import to_iso, utc_now


@pytest.mark.asyncio
async def test_ticket_lifecycle_end_to_end(helpdesk, network, user_a, agent, admin) -> None:
    view = await helpdesk.tickets.create(
        user_a,
        TicketInput(subject="VPN down", description="Tunnel drops", category_id=network, priority="High"),
    )
    ticket_id = view.ticket.id
    assert view.ticket.ticket_number == "TKT-000001"
    assert view.ticket.status == "Open"
    assert view.category is not None and view.category.name == "Network"
    assert view.creator is not None and view.creator.username == "alice"

    tally = await helpdesk.tickets.vote(agent, ticket_id, "up")
    assert (tally.upvotes, tally.downvotes) == (1, 0)

    with pytest.raises(DuplicateVoteError):
        await helpdesk.tickets.vote(agent, ticket_id, "up")
    assert (await helpdesk.tickets.get(agent, ticket_id)).ticket.upvotes == 1

    tally = await helpdesk.tickets.vote(agent, ticket_id, "down")
    assert (tally.upvotes, tally.downvotes) == (0, 1)

    assigned = await helpdesk.tickets.assign(admin, ticket_id, agent.id)
    assert assigned.ticket.status == "In Progress"
    assert assigned.assignee is not None and assigned.assignee.id == agent.id

    resolved = await helpdesk.tickets.update(admin, ticket_id, {"status": "Resolved"})
    first_resolved_at = resolved.ticket.resolved_at
    assert resolved.ticket.is_resolved is True
    assert first_resolved_at is not None
    assert resolved.ticket.resolved_by == admin.id

    closed = await helpdesk.tickets.update(admin, ticket_id, {"status": "Closed"})
    assert closed.ticket.status == "Closed"
    assert closed.ticket.is_resolved is True
    assert closed.ticket.resolved_at == first_resolved_at


@pytest.mark.asyncio
async def test_resolved_latch_survives_reentry(helpdesk, open_ticket, user_a, agent) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id

    first = await helpdesk.tickets.update(agent, ticket_id, {"status": "Resolved"})
    await helpdesk.tickets.update(agent, ticket_id, {"status": "Closed"})
    await asyncio.sleep(0.01)
    again = await helpdesk.tickets.update(agent, ticket_id, {"status": "Resolved"})

    assert again.ticket.resolved_at == first.ticket.resolved_at
    assert again.ticket.resolved_by == agent.id


@pytest.mark.asyncio
async def test_ticket_numbers_are_unique_under_concurrent_creation(helpdesk, open_ticket, user_a) -> None:
    views = await asyncio.gather(*(open_ticket(user_a, subject=f"Issue {i}") for i in range(12)))

    numbers = sorted(view.ticket.ticket_number for view in views)
    assert numbers == [f"TKT-{i:06d}" for i in range(1, 13)]


@pytest.mark.asyncio
async def test_create_rejects_unknown_and_inactive_category(helpdesk, network, user_a, admin) -> None:
    with pytest.raises(InvalidReferenceError):
        await helpdesk.tickets.create(user_a, TicketInput(subject="x", description="y", category_id="missing"))

    await helpdesk.categories.toggle_active(admin, network)
    with pytest.raises(InvalidReferenceError):
        await helpdesk.tickets.create(user_a, TicketInput(subject="x", description="y", category_id=network))


@pytest.mark.asyncio
async def test_create_validates_fields(helpdesk, open_ticket, user_a) -> None:
    with pytest.raises(ValidationError):
        await open_ticket(user_a, subject="   ")
    with pytest.raises(ValidationError):
        await open_ticket(user_a, subject="s" * 201)
    with pytest.raises(ValidationError):
        await open_ticket(user_a, tags=[f"t{i}" for i in range(11)])
    with pytest.raises(ValidationError):
        await open_ticket(user_a, priority="Urgent")
    with pytest.raises(ValidationError) as excinfo:
        await open_ticket(user_a, due_date=to_iso(utc_now() - timedelta(days=1)))
    assert excinfo.value.field_name == "dueDate"

    view = await open_ticket(user_a, tags=["vpn", " remote "], due_date=to_iso(utc_now() + timedelta(days=2)))
    assert view.ticket.tags == ["vpn", "remote"]
    assert view.ticket.priority == "Medium"


@pytest.mark.asyncio
async def test_user_list_is_scoped_to_own_tickets(helpdesk, open_ticket, user_a, user_b, agent) -> None:
    await open_ticket(user_a, subject="Printer jam")
    await open_ticket(user_b, subject="Printer offline")
    await open_ticket(agent, subject="Server rack")

    page = await helpdesk.tickets.list(user_a, TicketFilters(created_by=user_b.id))
    assert page.total == 0

    page = await helpdesk.tickets.list(user_a, TicketFilters(search="printer"))
    assert [view.ticket.subject for view in page.items] == ["Printer jam"]
    assert page.status_counts["Open"] == 1

    staff_page = await helpdesk.tickets.list(agent)
    assert staff_page.total == 3
    assert staff_page.status_counts["Open"] == 3


@pytest.mark.asyncio
async def test_mine_scope_covers_created_and_assigned(helpdesk, open_ticket, user_a, agent, admin) -> None:
    assigned = await open_ticket(user_a, subject="Assigned to bob")
    await helpdesk.tickets.assign(admin, assigned.ticket.id, agent.id)
    await open_ticket(agent, subject="Opened by bob")
    await open_ticket(user_a, subject="Someone else's")

    page = await helpdesk.tickets.list(agent, TicketFilters(mine=True, sort_by="subject", sort_order="asc"))

    assert [view.ticket.subject for view in page.items] == ["Assigned to bob", "Opened by bob"]


@pytest.mark.asyncio
async def test_list_sorts_by_priority_rank_and_paginates(helpdesk, open_ticket, user_a, agent) -> None:
    for subject, priority in [("a", "Low"), ("b", "Critical"), ("c", "Medium"), ("d", "High"), ("e", "Critical")]:
        await open_ticket(user_a, subject=subject, priority=priority)

    page = await helpdesk.tickets.list(
        agent, TicketFilters(sort_by="priority", sort_order="desc"), page=1, page_size=2
    )
    assert [view.ticket.subject for view in page.items] == ["b", "e"]
    assert page.total == 5
    assert page.total_pages == 3
    assert page.has_next is True
    assert page.has_prev is False

    last = await helpdesk.tickets.list(agent, TicketFilters(sort_by="priority", sort_order="desc"), page=3, page_size=2)
    assert [view.ticket.subject for view in last.items] == ["a"]
    assert last.has_next is False


@pytest.mark.asyncio
async def test_list_filters_and_rejects_unknown_sort(helpdesk, open_ticket, user_a, agent) -> None:
    first = await open_ticket(user_a, subject="Mail bounce", priority="High")
    await open_ticket(user_a, subject="Laptop fan", priority="Low")

    page = await helpdesk.tickets.list(agent, TicketFilters(priority="High"))
    assert [view.ticket.id for view in page.items] == [first.ticket.id]

    page = await helpdesk.tickets.list(agent, TicketFilters(search=first.ticket.ticket_number.lower()))
    assert page.total == 1

    page = await helpdesk.tickets.list(agent, TicketFilters(search="100%_match"))
    assert page.total == 0

    with pytest.raises(ValidationError):
        await helpdesk.tickets.list(agent, TicketFilters(sort_by="ticketNumber"))


@pytest.mark.asyncio
async def test_get_missing_ticket_raises_not_found(helpdesk, user_a) -> None:
    with pytest.raises(NotFoundError):
        await helpdesk.tickets.get(user_a, "does-not-exist")


@pytest.mark.asyncio
async def test_get_allows_any_principal_unless_restricted(helpdesk, open_ticket, user_a, user_b) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id
    assert (await helpdesk.tickets.get(user_b, ticket_id)).ticket.id == ticket_id

    helpdesk.config.tickets.restrict_user_visibility = True
    with pytest.raises(ForbiddenError):
        await helpdesk.tickets.get(user_b, ticket_id)
    assert (await helpdesk.tickets.get(user_a, ticket_id)).ticket.id == ticket_id


@pytest.mark.asyncio
async def test_user_patch_drops_privileged_fields(helpdesk, open_ticket, user_a, agent) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id

    view = await helpdesk.tickets.update(
        user_a,
        ticket_id,
        {"subject": "VPN still down", "status": "Closed", "priority": "Critical", "assigned_to": agent.id},
    )

    assert view.ticket.subject == "VPN still down"
    assert view.ticket.status == "Open"
    assert view.ticket.priority == "Medium"
    assert view.ticket.assigned_to is None


@pytest.mark.asyncio
async def test_user_cannot_update_someone_elses_ticket(helpdesk, open_ticket, user_a, user_b) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id

    with pytest.raises(ForbiddenError):
        await helpdesk.tickets.update(user_b, ticket_id, {"subject": "hijacked"})


def test_project_patch_keeps_only_role_fields() -> None:
    user = Principal(id="u1", role=ROLE_USER)
    patch = project_patch(user, {"subject": "s", "tags": ["a"], "status": "Closed", "unknown": 1})

    assert patch.changes() == {"subject": "s", "tags": ["a"]}


@pytest.mark.asyncio
async def test_update_validates_assignee_and_category(helpdesk, open_ticket, user_a, user_b, agent) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id

    with pytest.raises(InvalidReferenceError):
        await helpdesk.tickets.update(agent, ticket_id, {"assigned_to": user_b.id})
    with pytest.raises(InvalidReferenceError):
        await helpdesk.tickets.update(agent, ticket_id, {"category_id": "nope"})
    with pytest.raises(ValidationError):
        await helpdesk.tickets.update(agent, ticket_id, {"status": "Reopened"})


@pytest.mark.asyncio
async def test_assign_only_moves_open_tickets(helpdesk, open_ticket, user_a, agent, admin) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id
    await helpdesk.tickets.update(admin, ticket_id, {"status": "Resolved"})

    view = await helpdesk.tickets.assign(admin, ticket_id, agent.id)
    assert view.ticket.status == "Resolved"

    unassigned = await helpdesk.tickets.assign(admin, ticket_id, None)
    assert unassigned.ticket.assigned_to is None


@pytest.mark.asyncio
async def test_assign_requires_staff_and_valid_assignee(helpdesk, open_ticket, user_a, user_b, agent) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id

    with pytest.raises(ForbiddenError):
        await helpdesk.tickets.assign(user_a, ticket_id, agent.id)
    with pytest.raises(InvalidReferenceError):
        await helpdesk.tickets.assign(agent, ticket_id, user_b.id)
    with pytest.raises(InvalidReferenceError):
        await helpdesk.tickets.assign(agent, ticket_id, "ghost")


@pytest.mark.asyncio
async def test_vote_switch_updates_record_in_place(helpdesk, open_ticket, user_a, user_b) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id

    await helpdesk.tickets.vote(user_a, ticket_id, "up")
    await helpdesk.tickets.vote(user_b, ticket_id, "up")
    tally = await helpdesk.tickets.vote(user_b, ticket_id, "down")

    assert (tally.upvotes, tally.downvotes, tally.user_vote) == (1, 1, "down")
    assert await helpdesk.vote_repo.count_for_ticket(ticket_id) == 2
    stored = await helpdesk.vote_repo.get(ticket_id, user_b.id)
    assert stored is not None and stored.vote_type == "down"

    with pytest.raises(ValidationError):
        await helpdesk.tickets.vote(user_a, ticket_id, "sideways")


@pytest.mark.asyncio
async def test_concurrent_votes_are_not_lost(helpdesk, open_ticket, make_user, user_a) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id
    voters = [await make_user(f"voter{i}") for i in range(8)]

    await asyncio.gather(*(helpdesk.tickets.vote(voter, ticket_id, "up") for voter in voters))

    view = await helpdesk.tickets.get(user_a, ticket_id)
    assert view.ticket.upvotes == 8
    assert view.ticket.downvotes == 0


@pytest.mark.asyncio
async def test_lock_timeout_surfaces_retryable_conflict(helpdesk, open_ticket, user_a, agent) -> None:
    ticket_id = (await open_ticket(user_a)).ticket.id
    helpdesk.config.database.lock_timeout_seconds = 0.05

    async with helpdesk.tickets.ticket_lock(ticket_id):
        with pytest.raises(ConflictError) as excinfo:
            await helpdesk.tickets.update(agent, ticket_id, {"priority": "High"})

    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_creation_rate_limit(helpdesk, open_ticket, user_a) -> None:
    helpdesk.config.security.ticket_creation_max_per_hour = 2

    await open_ticket(user_a, subject="one")
    await open_ticket(user_a, subject="two")
    with pytest.raises(RateLimitedError):
        await open_ticket(user_a, subject="three")


@pytest.mark.asyncio
async def test_due_dates_in_the_past_are_allowed_on_update(helpdesk, open_ticket, user_a, agent) -> None:
    view = await open_ticket(user_a)
    yesterday = to_iso(utc_now() - timedelta(days=1))

    updated = await helpdesk.tickets.update(agent, view.ticket.id, {"due_date": yesterday})

    assert updated.ticket.due_date == yesterday


@pytest.mark.asyncio
async def test_search_folds_non_ascii_case(helpdesk, open_ticket, user_a, agent) -> None:
    await open_ticket(user_a, subject="Über VPN ausgefallen")
    await open_ticket(user_a, subject="Printer jam")

    for term in ("Über", "über", "ÜBER VPN"):
        page = await helpdesk.tickets.list(user_a, TicketFilters(search=term))
        assert [view.ticket.subject for view in page.items] == ["Über VPN ausgefallen"]

    staff_page = await helpdesk.tickets.list(agent, TicketFilters(search="ÜBER"))
    assert staff_page.total == 1


@pytest.mark.asyncio
async def test_list_filters_by_status_category_and_people(
    helpdesk, open_ticket, user_a, user_b, agent, admin
) -> None:
    hardware = await helpdesk.categories.create(admin, "Hardware")
    vpn = await open_ticket(user_a, subject="VPN down")
    laptop = await open_ticket(user_b, subject="Laptop fan", category_id=hardware.id)
    await open_ticket(user_b, subject="Mail bounce")
    await helpdesk.tickets.assign(admin, laptop.ticket.id, agent.id)
    await helpdesk.tickets.update(agent, vpn.ticket.id, {"status": "Resolved"})

    def subjects(page) -> list[str]:
        return sorted(view.ticket.subject for view in page.items)

    assert subjects(await helpdesk.tickets.list(agent, TicketFilters(status="Resolved"))) == ["VPN down"]
    assert subjects(await helpdesk.tickets.list(agent, TicketFilters(category_id=hardware.id))) == ["Laptop fan"]
    assert subjects(await helpdesk.tickets.list(agent, TicketFilters(assigned_to=agent.id))) == ["Laptop fan"]
    assert subjects(await helpdesk.tickets.list(admin, TicketFilters(created_by=user_b.id))) == [
        "Laptop fan",
        "Mail bounce",
    ]
    combined = await helpdesk.tickets.list(agent, TicketFilters(created_by=user_b.id, status="In Progress"))
    assert subjects(combined) == ["Laptop fan"]


@pytest.mark.asyncio
async def test_date_range_is_inclusive_of_the_whole_end_day(helpdesk, open_ticket, user_a, agent) -> None:
    early = await open_ticket(user_a, subject="Late on the first")
    late = await open_ticket(user_a, subject="Early on the second")
    for view, created_at in (
        (early, "2024-05-01T23:59:59.500000+00:00"),
        (late, "2024-05-02T00:00:00.000000+00:00"),
    ):
        await helpdesk.database.execute(
            "UPDATE tickets SET created_at = ? WHERE id = ?;", (created_at, view.ticket.id)
        )

    first_day = await helpdesk.tickets.list(agent, TicketFilters(date_from="2024-05-01", date_to="2024-05-01"))
    assert [view.ticket.id for view in first_day.items] == [early.ticket.id]

    from_second = await helpdesk.tickets.list(agent, TicketFilters(date_from="2024-05-02"))
    assert [view.ticket.id for view in from_second.items] == [late.ticket.id]

    until_first = await helpdesk.tickets.list(agent, TicketFilters(date_to="2024-05-01"))
    assert until_first.total == 1

    with pytest.raises(ValidationError):
        await helpdesk.tickets.list(agent, TicketFilters(date_from="yesterday"))


@pytest.mark.asyncio
async def test_equal_sort_keys_keep_creation_order(helpdesk, open_ticket, user_a, agent) -> None:
    created = [await open_ticket(user_a, subject=subject) for subject in ("one", "two", "three")]
    expected = [view.ticket.id for view in created]

    for sort_by in ("status", "priority"):
        for sort_order in ("asc", "desc"):
            page = await helpdesk.tickets.list(agent, TicketFilters(sort_by=sort_by, sort_order=sort_order))
            assert [view.ticket.id for view in page.items] == expected


@pytest.mark.asyncio
async def test_mine_flag_is_ignored_for_users(helpdesk, open_ticket, user_a, user_b, agent, admin) -> None:
    own = await open_ticket(user_a, subject="Mine")
    other = await open_ticket(user_b, subject="Not mine")
    await helpdesk.tickets.assign(admin, other.ticket.id, agent.id)

    plain = await helpdesk.tickets.list(user_a)
    mine = await helpdesk.tickets.list(user_a, TicketFilters(mine=True))

    assert [view.ticket.id for view in mine.items] == [view.ticket.id for view in plain.items] == [own.ticket.id]
    assert mine.status_counts == plain.status_counts
