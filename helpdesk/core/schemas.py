from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from database.models import Attachment, Category, User
from services.comment_service import CommentView
from services.statistics_service import StatisticsOverview, UserDashboard
from services.ticket_service import TicketPage, TicketView


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AttachmentRef(_Request):
    """Reference to an uploaded file; size and type are read back from storage."""

    stored_name: str = Field(alias="storedName")
    original_name: str = Field(default="", alias="originalName")


class TicketCreateRequest(_Request):
    subject: str = ""
    description: str = ""
    category_id: str = Field(default="", alias="category")
    priority: str | None = None
    tags: list[str] | None = None
    due_date: str | None = Field(default=None, alias="dueDate")
    estimated_hours: float | None = Field(default=None, alias="estimatedHours")
    attachments: list[AttachmentRef] = Field(default_factory=list)


class TicketUpdateRequest(_Request):
    subject: str | None = None
    description: str | None = None
    status: str | None = None
    priority: str | None = None
    category_id: str | None = Field(default=None, alias="category")
    assigned_to: str | None = Field(default=None, alias="assignedTo")
    tags: list[str] | None = None
    due_date: str | None = Field(default=None, alias="dueDate")
    estimated_hours: float | None = Field(default=None, alias="estimatedHours")
    actual_hours: float | None = Field(default=None, alias="actualHours")


class AssignRequest(_Request):
    assigned_to: str | None = Field(default=None, alias="assignedTo")


class VoteRequest(_Request):
    vote_type: str = Field(default="", validation_alias=AliasChoices("type", "voteType", "vote_type"))


class CommentCreateRequest(_Request):
    message: str | None = None
    is_internal: bool = Field(default=False, alias="isInternal")
    attachments: list[AttachmentRef] = Field(default_factory=list)


class CategoryCreateRequest(_Request):
    name: str = ""
    description: str | None = None
    color: str | None = None


class CategoryUpdateRequest(_Request):
    name: str | None = None
    description: str | None = None
    color: str | None = None
    is_active: bool | None = Field(default=None, alias="isActive")


class UserCreateRequest(_Request):
    username: str = ""
    email: str = ""
    role: str = "user"


class NotificationPreferences(_Request):
    email: bool | None = None
    browser: bool | None = None


class UserUpdateRequest(_Request):
    username: str | None = None
    email: str | None = None
    role: str | None = None
    is_active: bool | None = Field(default=None, alias="isActive")
    notifications: NotificationPreferences | None = None

    def to_patch(self) -> dict[str, Any]:
        patch = self.model_dump(exclude_unset=True, exclude={"notifications"})
        if self.notifications is not None:
            patch["notify_email"] = self.notifications.email
            patch["notify_browser"] = self.notifications.browser
        return patch


def user_ref(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "username": user.username, "email": user.email, "role": user.role}


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "isActive": user.is_active,
        "notifications": {"email": user.notify_email, "browser": user.notify_browser},
        "createdAt": user.created_at,
        "updatedAt": user.updated_at,
    }


def attachment_to_dict(attachment: Attachment) -> dict[str, Any]:
    return {
        "storedName": attachment.stored_name,
        "originalName": attachment.original_name,
        "mimeType": attachment.mime_type,
        "size": attachment.size,
        "uploadedAt": attachment.uploaded_at,
    }


def category_to_dict(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "color": category.color,
        "isActive": category.is_active,
        "createdBy": category.created_by,
        "createdAt": category.created_at,
        "updatedAt": category.updated_at,
    }


def ticket_to_dict(view: TicketView) -> dict[str, Any]:
    ticket = view.ticket
    category = (
        {"id": view.category.id, "name": view.category.name, "color": view.category.color}
        if view.category
        else {"id": ticket.category_id}
    )
    return {
        "id": ticket.id,
        "ticketNumber": ticket.ticket_number,
        "subject": ticket.subject,
        "description": ticket.description,
        "status": ticket.status,
        "priority": ticket.priority,
        "category": category,
        "createdBy": user_ref(view.creator) or {"id": ticket.created_by},
        "assignedTo": user_ref(view.assignee),
        "tags": list(ticket.tags),
        "attachments": [attachment_to_dict(item) for item in ticket.attachments],
        "upvotes": ticket.upvotes,
        "downvotes": ticket.downvotes,
        "isResolved": ticket.is_resolved,
        "resolvedAt": ticket.resolved_at,
        "resolvedBy": user_ref(view.resolver),
        "dueDate": ticket.due_date,
        "estimatedHours": ticket.estimated_hours,
        "actualHours": ticket.actual_hours,
        "createdAt": ticket.created_at,
        "updatedAt": ticket.updated_at,
    }


def ticket_page_to_dict(page: TicketPage) -> dict[str, Any]:
    return {
        "tickets": [ticket_to_dict(item) for item in page.items],
        "pagination": {
            "currentPage": page.page,
            "pageSize": page.page_size,
            "totalPages": page.total_pages,
            "totalTickets": page.total,
            "hasNext": page.has_next,
            "hasPrev": page.has_prev,
        },
        "statusCounts": page.status_counts,
    }


def comment_to_dict(view: CommentView) -> dict[str, Any]:
    comment = view.comment
    return {
        "id": comment.id,
        "ticket": comment.ticket_id,
        "author": user_ref(view.author) or {"id": comment.author_id},
        "message": comment.message,
        "isInternal": comment.is_internal,
        "attachments": [attachment_to_dict(item) for item in comment.attachments],
        "createdAt": comment.created_at,
        "editedAt": comment.edited_at,
        "editedBy": comment.edited_by,
        "isEdited": comment.is_edited,
    }


def statistics_to_dict(overview: StatisticsOverview) -> dict[str, Any]:
    return {
        "overview": {
            "totalTickets": overview.total_tickets,
            "openTickets": overview.open_tickets,
            "inProgressTickets": overview.in_progress_tickets,
            "resolvedTickets": overview.resolved_tickets,
            "closedTickets": overview.closed_tickets,
            "resolutionRate": overview.resolution_rate,
        },
        "priorityStats": [{"priority": name, "count": count} for name, count in overview.priority_counts.items()],
        "categoryStats": overview.category_counts,
        "agentStats": overview.agent_stats,
    }


def dashboard_to_dict(dashboard: UserDashboard) -> dict[str, Any]:
    if dashboard.assigned_counts is None:
        ticket_stats: dict[str, Any] = dashboard.created_counts
    else:
        ticket_stats = {"created": dashboard.created_counts, "assigned": dashboard.assigned_counts}
    return {
        "user": user_to_dict(dashboard.user),
        "ticketStats": ticket_stats,
        "recentTickets": [ticket_to_dict(item) for item in dashboard.recent_tickets],
    }
