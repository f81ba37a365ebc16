from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from utils.constants import (
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_PRIORITY,
    OUTBOX_PENDING,
    ROLE_USER,
    STAFF_ROLES,
    TICKET_STATUS_OPEN,
)


@dataclass(slots=True)
class User:
    id: str
    username: str
    email: str
    role: str = ROLE_USER
    is_active: bool = True
    notify_email: bool = True
    notify_browser: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


@dataclass(slots=True)
class Category:
    id: str
    name: str
    description: str = ""
    color: str = DEFAULT_CATEGORY_COLOR
    is_active: bool = True
    created_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class Attachment:
    stored_name: str
    original_name: str
    mime_type: str
    size: int
    uploaded_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stored_name": self.stored_name,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "size": self.size,
            "uploaded_at": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            stored_name=str(data.get("stored_name", "")),
            original_name=str(data.get("original_name", "")),
            mime_type=str(data.get("mime_type", "")),
            size=int(data.get("size", 0)),
            uploaded_at=data.get("uploaded_at"),
        )


@dataclass(slots=True)
class Ticket:
    id: str
    sequence: int
    ticket_number: str
    subject: str
    description: str
    category_id: str
    created_by: str
    status: str = TICKET_STATUS_OPEN
    priority: str = DEFAULT_PRIORITY
    assigned_to: str | None = None
    tags: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    upvotes: int = 0
    downvotes: int = 0
    is_resolved: bool = False
    resolved_at: str | None = None
    resolved_by: str | None = None
    due_date: str | None = None
    estimated_hours: float | None = None
    actual_hours: float | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(slots=True)
class Vote:
    ticket_id: str
    user_id: str
    vote_type: str
    voted_at: str


@dataclass(slots=True)
class Comment:
    id: str
    ticket_id: str
    author_id: str
    message: str
    is_internal: bool = False
    attachments: list[Attachment] = field(default_factory=list)
    created_at: str | None = None
    edited_at: str | None = None
    edited_by: str | None = None
    is_edited: bool = False


@dataclass(slots=True)
class OutboxEntry:
    id: str
    kind: str
    ticket_id: str
    target_user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: str = OUTBOX_PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: str | None = None
    dispatched_at: str | None = None
