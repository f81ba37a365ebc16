from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from typing import Any, Protocol
from uuid import uuid4

import aiohttp

from core.config import NotificationConfig
from database.models import OutboxEntry, Ticket, User
from database.repositories import OutboxRepository
from utils.constants import (
    NOTIFICATION_KINDS,
    NOTIFY_ASSIGNED,
    NOTIFY_COMMENTED,
    NOTIFY_CREATED,
    NOTIFY_STATUS_CHANGED,
)
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

_SUBJECTS = {
    NOTIFY_CREATED: "New Ticket Created: {subject}",
    NOTIFY_STATUS_CHANGED: "Ticket Status Updated: {subject}",
    NOTIFY_ASSIGNED: "Ticket Assigned to You: {subject}",
    NOTIFY_COMMENTED: "New Comment on Ticket: {subject}",
}


def render_notification(
    kind: str,
    ticket: Ticket,
    target: User,
    *,
    frontend_url: str,
    actor: User | None = None,
    category_name: str | None = None,
) -> dict[str, Any]:
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"Unknown notification kind: {kind}")
    link = f"{frontend_url.rstrip('/')}/tickets/{ticket.id}"
    lines = [f"Ticket #: {ticket.ticket_number}", f"Subject: {ticket.subject}"]
    if kind == NOTIFY_CREATED:
        lines.insert(0, "New Support Ticket Created")
        lines.extend(
            [
                f"Description: {ticket.description}",
                f"Created by: {actor.username if actor else ticket.created_by}",
                f"Category: {category_name or ticket.category_id}",
                f"Priority: {ticket.priority}",
            ]
        )
    elif kind == NOTIFY_STATUS_CHANGED:
        lines.insert(0, "Ticket Status Updated")
        lines.append(f"New Status: {ticket.status}")
    elif kind == NOTIFY_ASSIGNED:
        lines.insert(0, "You have been assigned a new ticket:")
        lines.append(f"Priority: {ticket.priority}")
    else:
        lines.insert(0, "A new comment has been added to your ticket:")
    lines.append(f"View Ticket: {link}")
    return {
        "to": target.email,
        "subject": _SUBJECTS[kind].format(subject=ticket.subject),
        "body": "\n".join(lines),
        "link": link,
        "ticketNumber": ticket.ticket_number,
    }


class NotificationSender(Protocol):
    async def send(self, entry: OutboxEntry) -> None: ...


class LogNotificationSender:
    async def send(self, entry: OutboxEntry) -> None:
        LOGGER.info(
            "Notification delivered. kind=%s ticket=%s to=%s subject=%s",
            entry.kind,
            entry.ticket_id,
            entry.payload.get("to"),
            entry.payload.get("subject"),
        )


class WebhookNotificationSender:
    def __init__(self, url: str, timeout_seconds: float = 10) -> None:
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send(self, entry: OutboxEntry) -> None:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(
                self.url,
                json={
                    "id": entry.id,
                    "kind": entry.kind,
                    "ticketId": entry.ticket_id,
                    "targetUserId": entry.target_user_id,
                    **entry.payload,
                },
            ) as response:
                response.raise_for_status()


def build_sender(config: NotificationConfig) -> NotificationSender:
    if config.sender == "webhook":
        return WebhookNotificationSender(config.webhook_url)
    return LogNotificationSender()


class NotificationService:
    """Writes ticket notifications into the outbox.

    Emission never raises into the caller: a failure here must not undo or
    fail the ticket mutation that triggered it.
    """

    def __init__(
        self,
        config: NotificationConfig,
        outbox_repo: OutboxRepository,
        on_enqueued: Callable[[], None] | None = None,
    ) -> None:
        self.config = config
        self.outbox_repo = outbox_repo
        self.on_enqueued = on_enqueued

    async def emit(
        self,
        kind: str,
        ticket: Ticket,
        target: User | None,
        *,
        actor: User | None = None,
        category_name: str | None = None,
    ) -> bool:
        if not self.config.enabled or target is None:
            return False
        if not target.is_active or not target.notify_email:
            return False
        try:
            payload = render_notification(
                kind,
                ticket,
                target,
                frontend_url=self.config.frontend_url,
                actor=actor,
                category_name=category_name,
            )
            await self.outbox_repo.enqueue(
                OutboxEntry(
                    id=str(uuid4()),
                    kind=kind,
                    ticket_id=ticket.id,
                    target_user_id=target.id,
                    payload=payload,
                    created_at=to_iso(utc_now()),
                )
            )
        except Exception:
            LOGGER.exception("Failed to queue notification. kind=%s ticket=%s target=%s", kind, ticket.id, target.id)
            return False
        if self.on_enqueued:
            self.on_enqueued()
        return True

    async def emit_many(
        self,
        kind: str,
        ticket: Ticket,
        targets: Iterable[User],
        *,
        actor: User | None = None,
        category_name: str | None = None,
    ) -> int:
        queued = 0
        for target in targets:
            if await self.emit(kind, ticket, target, actor=actor, category_name=category_name):
                queued += 1
        return queued


class NotificationDispatcher:
    """Drains the outbox in batches and hands entries to a sender."""

    def __init__(self, config: NotificationConfig, outbox_repo: OutboxRepository, sender: NotificationSender) -> None:
        self.config = config
        self.outbox_repo = outbox_repo
        self.sender = sender
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def wake(self) -> None:
        self._wake.set()

    async def _deliver(self, entry: OutboxEntry) -> bool:
        try:
            await self.sender.send(entry)
        except Exception as exc:
            LOGGER.warning("Notification delivery failed. id=%s kind=%s error=%s", entry.id, entry.kind, exc)
            await self.outbox_repo.mark_attempt_failed(entry.id, str(exc) or type(exc).__name__, self.config.max_attempts)
            return False
        await self.outbox_repo.mark_sent(entry.id, to_iso(utc_now()))
        return True

    async def dispatch_pending(self) -> int:
        """Deliver one batch concurrently and return how many entries were sent."""
        entries = await self.outbox_repo.pending(limit=self.config.batch_size)
        if not entries:
            return 0
        results = await asyncio.gather(*(self._deliver(entry) for entry in entries))
        sent = sum(1 for ok in results if ok)
        LOGGER.debug("Dispatched notification batch. size=%s sent=%s", len(entries), sent)
        return sent

    async def run(self) -> None:
        LOGGER.info("Notification dispatcher started. sender=%s", type(self.sender).__name__)
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                await self.dispatch_pending()
            except Exception:
                LOGGER.exception("Notification dispatch loop failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="notification-dispatcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
