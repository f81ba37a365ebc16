from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from database.base import Database
from database.models import Attachment, Category, Comment, OutboxEntry, Ticket, User, Vote
from utils.constants import (
    OUTBOX_FAILED,
    OUTBOX_PENDING,
    OUTBOX_SENT,
    PRIORITY_LEVELS,
    STAFF_ROLES,
    TICKET_STATUSES,
)


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _like_pattern(term: str) -> str:
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _range_conditions(column: str, start: str | None, end: str | None) -> tuple[list[str], list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if start:
        clauses.append(f"{column} >= ?")
        params.append(start)
    if end:
        clauses.append(f"{column} <= ?")
        params.append(end)
    return clauses, params


def _where(clauses: list[str]) -> str:
    return f"WHERE {' AND '.join(clauses)}" if clauses else ""


def _order_case(column: str, values: Iterable[str]) -> str:
    branches = " ".join(f"WHEN '{value}' THEN {rank}" for rank, value in enumerate(values))
    return f"CASE {column} {branches} ELSE 99 END"


_SORT_COLUMNS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "subject": "LOWER(subject)",
    "priority": _order_case("priority", PRIORITY_LEVELS),
    "status": _order_case("status", TICKET_STATUSES),
}


class UserRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, user: User) -> None:
        await self.db.execute(
            """
            INSERT INTO users(
                id, username, email, role, is_active, notify_email, notify_browser,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                user.id,
                user.username,
                user.email,
                user.role,
                user.is_active,
                user.notify_email,
                user.notify_browser,
                user.created_at,
                user.updated_at,
            ],
        )

    async def update(self, user: User) -> None:
        await self.db.execute(
            """
            UPDATE users
            SET username = ?, email = ?, role = ?, is_active = ?, notify_email = ?,
                notify_browser = ?, updated_at = ?
            WHERE id = ?;
            """,
            [
                user.username,
                user.email,
                user.role,
                user.is_active,
                user.notify_email,
                user.notify_browser,
                user.updated_at,
                user.id,
            ],
        )

    async def delete(self, user_id: str) -> None:
        await self.db.execute("DELETE FROM users WHERE id = ?;", [user_id])

    async def get_by_id(self, user_id: str) -> User | None:
        row = await self.db.fetchone("SELECT * FROM users WHERE id = ?;", [user_id])
        if not row:
            return None
        return self._row_to_user(row)

    async def get_many(self, user_ids: Iterable[str | None]) -> dict[str, User]:
        ids = sorted({user_id for user_id in user_ids if user_id})
        if not ids:
            return {}
        rows = await self.db.fetchall(
            f"SELECT * FROM users WHERE id IN ({_placeholders(len(ids))});",
            ids,
        )
        return {row["id"]: self._row_to_user(row) for row in rows}

    async def find_conflicting(
        self, username: str | None, email: str | None, exclude_id: str | None = None
    ) -> User | None:
        clauses: list[str] = []
        params: list[Any] = []
        if username:
            clauses.append("LOWER(username) = ?")
            params.append(username.lower())
        if email:
            clauses.append("LOWER(email) = ?")
            params.append(email.lower())
        if not clauses:
            return None
        query = f"SELECT * FROM users WHERE ({' OR '.join(clauses)})"
        if exclude_id:
            query += " AND id <> ?"
            params.append(exclude_id)
        row = await self.db.fetchone(query + " LIMIT 1;", params)
        if not row:
            return None
        return self._row_to_user(row)

    async def list_staff(self, *, notify_email_only: bool = False) -> list[User]:
        roles = sorted(STAFF_ROLES)
        query = f"""
            SELECT * FROM users
            WHERE role IN ({_placeholders(len(roles))}) AND is_active = ?
        """
        params: list[Any] = [*roles, True]
        if notify_email_only:
            query += " AND notify_email = ?"
            params.append(True)
        rows = await self.db.fetchall(query + " ORDER BY LOWER(username) ASC;", params)
        return [self._row_to_user(row) for row in rows]

    async def search(
        self, *, role: str | None = None, term: str | None = None, is_active: bool | None = None
    ) -> list[User]:
        clauses: list[str] = []
        params: list[Any] = []
        if role:
            clauses.append("role = ?")
            params.append(role)
        if is_active is not None:
            clauses.append("is_active = ?")
            params.append(is_active)
        if term:
            pattern = _like_pattern(term)
            clauses.append("(LOWER(username) LIKE ? ESCAPE '\\' OR LOWER(email) LIKE ? ESCAPE '\\')")
            params.extend([pattern, pattern])
        rows = await self.db.fetchall(
            f"SELECT * FROM users {_where(clauses)} ORDER BY created_at DESC;",
            params,
        )
        return [self._row_to_user(row) for row in rows]

    async def count(self) -> int:
        return int(await self.db.fetchval("SELECT COUNT(*) AS count FROM users;", default=0))

    def _row_to_user(self, row: dict[str, Any]) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            role=row["role"],
            is_active=bool(row["is_active"]),
            notify_email=bool(row["notify_email"]),
            notify_browser=bool(row["notify_browser"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class CategoryRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, category: Category) -> None:
        await self.db.execute(
            """
            INSERT INTO categories(
                id, name, name_key, description, color, is_active, created_by,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                category.id,
                category.name,
                category.name.lower(),
                category.description,
                category.color,
                category.is_active,
                category.created_by,
                category.created_at,
                category.updated_at,
            ],
        )

    async def update(self, category: Category) -> None:
        await self.db.execute(
            """
            UPDATE categories
            SET name = ?, name_key = ?, description = ?, color = ?, is_active = ?, updated_at = ?
            WHERE id = ?;
            """,
            [
                category.name,
                category.name.lower(),
                category.description,
                category.color,
                category.is_active,
                category.updated_at,
                category.id,
            ],
        )

    async def delete(self, category_id: str) -> None:
        await self.db.execute("DELETE FROM categories WHERE id = ?;", [category_id])

    async def get(self, category_id: str) -> Category | None:
        row = await self.db.fetchone("SELECT * FROM categories WHERE id = ?;", [category_id])
        if not row:
            return None
        return self._row_to_category(row)

    async def get_many(self, category_ids: Iterable[str]) -> dict[str, Category]:
        ids = sorted(set(category_ids))
        if not ids:
            return {}
        rows = await self.db.fetchall(
            f"SELECT * FROM categories WHERE id IN ({_placeholders(len(ids))});",
            ids,
        )
        return {row["id"]: self._row_to_category(row) for row in rows}

    async def find_by_name(self, name: str, exclude_id: str | None = None) -> Category | None:
        query = "SELECT * FROM categories WHERE name_key = ?"
        params: list[Any] = [name.strip().lower()]
        if exclude_id:
            query += " AND id <> ?"
            params.append(exclude_id)
        row = await self.db.fetchone(query + ";", params)
        if not row:
            return None
        return self._row_to_category(row)

    async def list(self, is_active: bool | None = True) -> list[Category]:
        if is_active is None:
            rows = await self.db.fetchall("SELECT * FROM categories ORDER BY name_key ASC;")
        else:
            rows = await self.db.fetchall(
                "SELECT * FROM categories WHERE is_active = ? ORDER BY name_key ASC;",
                [is_active],
            )
        return [self._row_to_category(row) for row in rows]

    def _row_to_category(self, row: dict[str, Any]) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            color=row["color"],
            is_active=bool(row["is_active"]),
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class CounterRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def next_value(self, name: str) -> int:
        """Allocate the next value of a named counter in a single atomic statement."""
        await self.db.execute(
            """
            INSERT INTO counters(name, value)
            VALUES (?, 0)
            ON CONFLICT(name) DO NOTHING;
            """,
            [name],
        )
        row = await self.db.execute_returning(
            "UPDATE counters SET value = value + 1 WHERE name = ? RETURNING value;",
            [name],
        )
        if not row:
            raise RuntimeError(f"Counter {name} could not be allocated")
        return int(row["value"])


@dataclass(slots=True)
class TicketQuery:
    scope_user_id: str | None = None
    mine_user_id: str | None = None
    status: str | None = None
    category_id: str | None = None
    priority: str | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    search: str | None = None
    created_from: str | None = None
    created_to: str | None = None
    sort_by: str = "createdAt"
    descending: bool = True
    limit: int = 10
    offset: int = 0


class TicketRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, ticket: Ticket) -> None:
        await self.db.execute(
            """
            INSERT INTO tickets(
                id, sequence, ticket_number, subject, description, status, priority,
                category_id, created_by, assigned_to, tags_json, attachments_json,
                upvotes, downvotes, is_resolved, resolved_at, resolved_by, due_date,
                estimated_hours, actual_hours, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.id,
                ticket.sequence,
                ticket.ticket_number,
                ticket.subject,
                ticket.description,
                ticket.status,
                ticket.priority,
                ticket.category_id,
                ticket.created_by,
                ticket.assigned_to,
                _json_dump(ticket.tags),
                _json_dump([item.as_dict() for item in ticket.attachments]),
                ticket.upvotes,
                ticket.downvotes,
                ticket.is_resolved,
                ticket.resolved_at,
                ticket.resolved_by,
                ticket.due_date,
                ticket.estimated_hours,
                ticket.actual_hours,
                ticket.created_at,
                ticket.updated_at,
            ],
        )

    async def save(self, ticket: Ticket) -> None:
        # Vote totals are owned by refresh_vote_totals and never written here.
        await self.db.execute(
            """
            UPDATE tickets
            SET subject = ?, description = ?, status = ?, priority = ?, category_id = ?,
                assigned_to = ?, tags_json = ?, attachments_json = ?, is_resolved = ?,
                resolved_at = ?, resolved_by = ?, due_date = ?, estimated_hours = ?,
                actual_hours = ?, updated_at = ?
            WHERE id = ?;
            """,
            [
                ticket.subject,
                ticket.description,
                ticket.status,
                ticket.priority,
                ticket.category_id,
                ticket.assigned_to,
                _json_dump(ticket.tags),
                _json_dump([item.as_dict() for item in ticket.attachments]),
                ticket.is_resolved,
                ticket.resolved_at,
                ticket.resolved_by,
                ticket.due_date,
                ticket.estimated_hours,
                ticket.actual_hours,
                ticket.updated_at,
                ticket.id,
            ],
        )

    async def touch(self, ticket_id: str, updated_at: str) -> None:
        await self.db.execute(
            "UPDATE tickets SET updated_at = ? WHERE id = ?;",
            [updated_at, ticket_id],
        )

    async def refresh_vote_totals(self, ticket_id: str, updated_at: str) -> tuple[int, int]:
        row = await self.db.execute_returning(
            """
            UPDATE tickets
            SET upvotes = (
                    SELECT COUNT(*) FROM ticket_votes WHERE ticket_id = ? AND vote_type = 'up'
                ),
                downvotes = (
                    SELECT COUNT(*) FROM ticket_votes WHERE ticket_id = ? AND vote_type = 'down'
                ),
                updated_at = ?
            WHERE id = ?
            RETURNING upvotes, downvotes;
            """,
            [ticket_id, ticket_id, updated_at, ticket_id],
        )
        if not row:
            return 0, 0
        return int(row["upvotes"]), int(row["downvotes"])

    async def get_by_id(self, ticket_id: str) -> Ticket | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE id = ?;", [ticket_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def count_by_category(self, category_id: str) -> int:
        return int(
            await self.db.fetchval(
                "SELECT COUNT(*) AS count FROM tickets WHERE category_id = ?;",
                [category_id],
                default=0,
            )
        )

    async def count_linked_to_user(self, user_id: str) -> int:
        return int(
            await self.db.fetchval(
                "SELECT COUNT(*) AS count FROM tickets WHERE created_by = ? OR assigned_to = ?;",
                [user_id, user_id],
                default=0,
            )
        )

    async def search(self, query: TicketQuery) -> tuple[list[Ticket], int]:
        clauses, params = self._conditions(query)
        where = _where(clauses)
        total = int(
            await self.db.fetchval(f"SELECT COUNT(*) AS count FROM tickets {where};", params, default=0)
        )
        order_column = _SORT_COLUMNS.get(query.sort_by, "created_at")
        direction = "DESC" if query.descending else "ASC"
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM tickets
            {where}
            ORDER BY {order_column} {direction}, sequence ASC
            LIMIT ? OFFSET ?;
            """,
            [*params, query.limit, query.offset],
        )
        return [self._row_to_ticket(row) for row in rows], total

    async def status_counts(
        self, created_by: str | None = None, assigned_to: str | None = None
    ) -> dict[str, int]:
        clauses: list[str] = []
        params: list[Any] = []
        if created_by:
            clauses.append("created_by = ?")
            params.append(created_by)
        if assigned_to:
            clauses.append("assigned_to = ?")
            params.append(assigned_to)
        rows = await self.db.fetchall(
            f"SELECT status, COUNT(*) AS count FROM tickets {_where(clauses)} GROUP BY status;",
            params,
        )
        counts = {status: 0 for status in TICKET_STATUSES}
        for row in rows:
            counts[row["status"]] = int(row["count"])
        return counts

    async def list_recent_for_user(
        self, user_id: str, include_assigned: bool, limit: int = 5
    ) -> list[Ticket]:
        if include_assigned:
            condition = "created_by = ? OR assigned_to = ?"
            params: list[Any] = [user_id, user_id]
        else:
            condition = "created_by = ?"
            params = [user_id]
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM tickets
            WHERE {condition}
            ORDER BY updated_at DESC, sequence DESC
            LIMIT ?;
            """,
            [*params, limit],
        )
        return [self._row_to_ticket(row) for row in rows]

    @staticmethod
    def _conditions(query: TicketQuery) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        # The ownership scope comes first and is always ANDed with the rest.
        if query.scope_user_id:
            clauses.append("created_by = ?")
            params.append(query.scope_user_id)
        if query.mine_user_id:
            clauses.append("(created_by = ? OR assigned_to = ?)")
            params.extend([query.mine_user_id, query.mine_user_id])
        for column, value in (
            ("status", query.status),
            ("category_id", query.category_id),
            ("priority", query.priority),
            ("assigned_to", query.assigned_to),
            ("created_by", query.created_by),
        ):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if query.search:
            pattern = _like_pattern(query.search)
            clauses.append(
                "(LOWER(subject) LIKE ? ESCAPE '\\' OR LOWER(description) LIKE ? ESCAPE '\\'"
                " OR LOWER(ticket_number) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern, pattern])
        range_clauses, range_params = _range_conditions("created_at", query.created_from, query.created_to)
        clauses.extend(range_clauses)
        params.extend(range_params)
        return clauses, params

    def _row_to_ticket(self, row: dict[str, Any]) -> Ticket:
        return Ticket(
            id=row["id"],
            sequence=int(row["sequence"]),
            ticket_number=row["ticket_number"],
            subject=row["subject"],
            description=row["description"],
            category_id=row["category_id"],
            created_by=row["created_by"],
            status=row["status"],
            priority=row["priority"],
            assigned_to=row["assigned_to"],
            tags=[str(tag) for tag in _json_load(row["tags_json"], [])],
            attachments=[Attachment.from_dict(item) for item in _json_load(row["attachments_json"], [])],
            upvotes=int(row["upvotes"]),
            downvotes=int(row["downvotes"]),
            is_resolved=bool(row["is_resolved"]),
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
            due_date=row["due_date"],
            estimated_hours=row["estimated_hours"],
            actual_hours=row["actual_hours"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class VoteRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get(self, ticket_id: str, user_id: str) -> Vote | None:
        row = await self.db.fetchone(
            "SELECT * FROM ticket_votes WHERE ticket_id = ? AND user_id = ?;",
            [ticket_id, user_id],
        )
        if not row:
            return None
        return Vote(
            ticket_id=row["ticket_id"],
            user_id=row["user_id"],
            vote_type=row["vote_type"],
            voted_at=row["voted_at"],
        )

    async def add(self, vote: Vote) -> None:
        await self.db.execute(
            """
            INSERT INTO ticket_votes(ticket_id, user_id, vote_type, voted_at)
            VALUES (?, ?, ?, ?);
            """,
            [vote.ticket_id, vote.user_id, vote.vote_type, vote.voted_at],
        )

    async def change(self, vote: Vote) -> None:
        await self.db.execute(
            """
            UPDATE ticket_votes
            SET vote_type = ?, voted_at = ?
            WHERE ticket_id = ? AND user_id = ?;
            """,
            [vote.vote_type, vote.voted_at, vote.ticket_id, vote.user_id],
        )

    async def count_for_ticket(self, ticket_id: str) -> int:
        return int(
            await self.db.fetchval(
                "SELECT COUNT(*) AS count FROM ticket_votes WHERE ticket_id = ?;",
                [ticket_id],
                default=0,
            )
        )


class CommentRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, comment: Comment) -> None:
        await self.db.execute(
            """
            INSERT INTO comments(
                id, ticket_id, author_id, message, is_internal, attachments_json,
                created_at, edited_at, edited_by, is_edited
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                comment.id,
                comment.ticket_id,
                comment.author_id,
                comment.message,
                comment.is_internal,
                _json_dump([item.as_dict() for item in comment.attachments]),
                comment.created_at,
                comment.edited_at,
                comment.edited_by,
                comment.is_edited,
            ],
        )

    async def list_for_ticket(self, ticket_id: str, include_internal: bool) -> list[Comment]:
        query = "SELECT * FROM comments WHERE ticket_id = ?"
        params: list[Any] = [ticket_id]
        if not include_internal:
            query += " AND is_internal = ?"
            params.append(False)
        rows = await self.db.fetchall(query + " ORDER BY created_at ASC, id ASC;", params)
        return [self._row_to_comment(row) for row in rows]

    def _row_to_comment(self, row: dict[str, Any]) -> Comment:
        return Comment(
            id=row["id"],
            ticket_id=row["ticket_id"],
            author_id=row["author_id"],
            message=row["message"],
            is_internal=bool(row["is_internal"]),
            attachments=[Attachment.from_dict(item) for item in _json_load(row["attachments_json"], [])],
            created_at=row["created_at"],
            edited_at=row["edited_at"],
            edited_by=row["edited_by"],
            is_edited=bool(row["is_edited"]),
        )


class OutboxRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def enqueue(self, entry: OutboxEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO notification_outbox(
                id, kind, ticket_id, target_user_id, payload_json, status, attempts, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                entry.id,
                entry.kind,
                entry.ticket_id,
                entry.target_user_id,
                _json_dump(entry.payload),
                entry.status,
                entry.attempts,
                entry.created_at,
            ],
        )

    async def pending(self, limit: int = 50) -> list[OutboxEntry]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM notification_outbox
            WHERE status = ?
            ORDER BY created_at ASC
            LIMIT ?;
            """,
            [OUTBOX_PENDING, limit],
        )
        return [self._row_to_entry(row) for row in rows]

    async def list_by_status(self, status: str) -> list[OutboxEntry]:
        rows = await self.db.fetchall(
            "SELECT * FROM notification_outbox WHERE status = ? ORDER BY created_at ASC;",
            [status],
        )
        return [self._row_to_entry(row) for row in rows]

    async def mark_sent(self, entry_id: str, dispatched_at: str) -> None:
        await self.db.execute(
            """
            UPDATE notification_outbox
            SET status = ?, attempts = attempts + 1, dispatched_at = ?, last_error = NULL
            WHERE id = ?;
            """,
            [OUTBOX_SENT, dispatched_at, entry_id],
        )

    async def mark_attempt_failed(self, entry_id: str, reason: str, max_attempts: int) -> None:
        await self.db.execute(
            """
            UPDATE notification_outbox
            SET attempts = attempts + 1,
                last_error = ?,
                status = CASE WHEN attempts + 1 >= ? THEN ? ELSE ? END
            WHERE id = ?;
            """,
            [reason[:200], max_attempts, OUTBOX_FAILED, OUTBOX_PENDING, entry_id],
        )

    def _row_to_entry(self, row: dict[str, Any]) -> OutboxEntry:
        return OutboxEntry(
            id=row["id"],
            kind=row["kind"],
            ticket_id=row["ticket_id"],
            target_user_id=row["target_user_id"],
            payload=dict(_json_load(row["payload_json"], {})),
            status=row["status"],
            attempts=int(row["attempts"]),
            last_error=row["last_error"],
            created_at=row["created_at"],
            dispatched_at=row["dispatched_at"],
        )


class StatisticsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def status_counts(self, start: str | None, end: str | None) -> list[dict[str, Any]]:
        clauses, params = _range_conditions("created_at", start, end)
        return await self.db.fetchall(
            f"SELECT status, COUNT(*) AS count FROM tickets {_where(clauses)} GROUP BY status;",
            params,
        )

    async def priority_counts(self, start: str | None, end: str | None) -> list[dict[str, Any]]:
        clauses, params = _range_conditions("created_at", start, end)
        return await self.db.fetchall(
            f"SELECT priority, COUNT(*) AS count FROM tickets {_where(clauses)} GROUP BY priority;",
            params,
        )

    async def category_counts(self, start: str | None, end: str | None) -> list[dict[str, Any]]:
        clauses, params = _range_conditions("t.created_at", start, end)
        return await self.db.fetchall(
            f"""
            SELECT c.id AS category_id, c.name AS name, COUNT(*) AS count
            FROM tickets t
            JOIN categories c ON c.id = t.category_id
            {_where(clauses)}
            GROUP BY c.id, c.name
            ORDER BY count DESC, c.name ASC;
            """,
            params,
        )

    async def agent_counts(self, start: str | None, end: str | None) -> list[dict[str, Any]]:
        clauses, params = _range_conditions("t.created_at", start, end)
        clauses.insert(0, "t.assigned_to IS NOT NULL")
        return await self.db.fetchall(
            f"""
            SELECT
                u.id AS user_id,
                u.username AS username,
                COUNT(*) AS total_assigned,
                SUM(CASE WHEN t.status = 'Resolved' THEN 1 ELSE 0 END) AS resolved,
                SUM(CASE WHEN t.status = 'Closed' THEN 1 ELSE 0 END) AS closed
            FROM tickets t
            JOIN users u ON u.id = t.assigned_to
            {_where(clauses)}
            GROUP BY u.id, u.username
            ORDER BY total_assigned DESC, u.username ASC;
            """,
            params,
        )
