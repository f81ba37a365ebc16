from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import uuid4

from core.errors import ForbiddenError, ValidationError
from database.models import Attachment, Comment, User
from database.repositories import CommentRepository, TicketRepository, UserRepository
from services.identity_service import Principal
from services.notification_service import NotificationService
from services.ticket_service import TicketService
from utils.constants import COMMENT_MAX_LENGTH, NOTIFY_COMMENTED
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CommentView:
    comment: Comment
    author: User | None = None


class CommentService:
    def __init__(
        self,
        tickets: TicketService,
        ticket_repo: TicketRepository,
        comment_repo: CommentRepository,
        user_repo: UserRepository,
        notifications: NotificationService,
        max_attachments: int,
    ) -> None:
        self.tickets = tickets
        self.ticket_repo = ticket_repo
        self.comment_repo = comment_repo
        self.user_repo = user_repo
        self.notifications = notifications
        self.max_attachments = max_attachments

    async def add(
        self,
        principal: Principal,
        ticket_id: str,
        message: str | None,
        is_internal: bool = False,
        attachments: list[Attachment] | None = None,
    ) -> CommentView:
        text = (message or "").strip()
        if not text:
            raise ValidationError("Comment message is required", field_name="message")
        if len(text) > COMMENT_MAX_LENGTH:
            raise ValidationError(
                f"Comment cannot exceed {COMMENT_MAX_LENGTH} characters", field_name="message"
            )
        attachments = list(attachments or [])
        if len(attachments) > self.max_attachments:
            raise ValidationError(
                f"Too many files. Maximum is {self.max_attachments} files.", field_name="attachments"
            )

        async with self.tickets.ticket_lock(ticket_id):
            ticket = await self.tickets.load(ticket_id)
            if not principal.is_staff and ticket.created_by != principal.id:
                raise ForbiddenError("Access denied")

            now = to_iso(utc_now())
            comment = Comment(
                id=str(uuid4()),
                ticket_id=ticket.id,
                author_id=principal.id,
                message=text,
                # Only staff may write internal notes.
                is_internal=bool(is_internal) and principal.is_staff,
                attachments=attachments,
                created_at=now,
            )
            await self.comment_repo.create(comment)
            await self.ticket_repo.touch(ticket.id, now)
            ticket.updated_at = now

        LOGGER.info(
            "Comment added. ticket=%s comment=%s by=%s internal=%s",
            ticket.id,
            comment.id,
            principal.id,
            comment.is_internal,
        )
        author = await self.user_repo.get_by_id(principal.id)
        if ticket.created_by != principal.id:
            creator = await self.user_repo.get_by_id(ticket.created_by)
            await self.notifications.emit(NOTIFY_COMMENTED, ticket, creator, actor=author)
        return CommentView(comment=comment, author=author)

    async def list(self, principal: Principal, ticket_id: str) -> list[CommentView]:
        ticket = await self.tickets.load(ticket_id)
        self.tickets.ensure_can_view(principal, ticket)
        comments = await self.comment_repo.list_for_ticket(ticket.id, include_internal=principal.is_staff)
        authors = await self.user_repo.get_many(c.author_id for c in comments)
        return [CommentView(comment=c, author=authors.get(c.author_id)) for c in comments]
