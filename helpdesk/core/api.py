from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from core.app import HelpDeskApp
from core.errors import (
    HelpDeskError,
    InvalidReferenceError,
    ValidationError,
    handle_helpdesk_error,
    handle_unexpected_error,
)
from core.logging import REQUEST_ID
from core.schemas import (
    AssignRequest,
    AttachmentRef,
    CategoryCreateRequest,
    CategoryUpdateRequest,
    CommentCreateRequest,
    TicketCreateRequest,
    TicketUpdateRequest,
    UserCreateRequest,
    UserUpdateRequest,
    VoteRequest,
    attachment_to_dict,
    category_to_dict,
    comment_to_dict,
    dashboard_to_dict,
    statistics_to_dict,
    ticket_page_to_dict,
    ticket_to_dict,
    user_to_dict,
)
from database.models import Attachment
from services.identity_service import Principal
from services.ticket_service import TicketFilters, TicketInput

LOGGER = logging.getLogger(__name__)


async def handle_request_validation_error(request: Request, error: RequestValidationError) -> JSONResponse:
    first = error.errors()[0] if error.errors() else {}
    location = [str(part) for part in first.get("loc", ()) if part not in {"body", "query", "path"}]
    return await handle_helpdesk_error(
        request,
        ValidationError(str(first.get("msg", "Invalid request")), field_name=".".join(location) or None),
    )


def create_api_app(helpdesk: HelpDeskApp) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await helpdesk.start()
        try:
            yield
        finally:
            await helpdesk.close()

    app = FastAPI(title="Help Desk API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=helpdesk.config.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(HelpDeskError, handle_helpdesk_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, handle_unexpected_error)

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid4().hex[:12]
        token = REQUEST_ID.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            LOGGER.info(
                "Request handled. method=%s path=%s status=%s duration_ms=%.1f",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            REQUEST_ID.reset(token)

    async def current_principal(authorization: str | None = Header(default=None)) -> Principal:
        return await helpdesk.identity.resolve(authorization)

    def resolve_attachments(refs: list[AttachmentRef]) -> list[Attachment]:
        attachments = []
        for ref in refs:
            attachment = helpdesk.blob_store.describe(ref.stored_name, ref.original_name)
            if attachment is None:
                raise InvalidReferenceError("Unknown attachment", field_name="attachments")
            attachments.append(attachment)
        return attachments

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    # Tickets

    @app.post("/api/tickets", status_code=201)
    async def create_ticket(
        body: TicketCreateRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        view = await helpdesk.tickets.create(
            principal,
            TicketInput(
                subject=body.subject,
                description=body.description,
                category_id=body.category_id,
                priority=body.priority,
                tags=body.tags,
                due_date=body.due_date,
                estimated_hours=body.estimated_hours,
                attachments=resolve_attachments(body.attachments),
            ),
        )
        return {"message": "Ticket created successfully", "ticket": ticket_to_dict(view)}

    @app.get("/api/tickets")
    async def list_tickets(
        principal: Principal = Depends(current_principal),
        page: int = 1,
        limit: int | None = None,
        status: str | None = None,
        category: str | None = None,
        priority: str | None = None,
        assigned_to: str | None = Query(default=None, alias="assignedTo"),
        created_by: str | None = Query(default=None, alias="createdBy"),
        search: str | None = None,
        date_from: str | None = Query(default=None, alias="dateFrom"),
        date_to: str | None = Query(default=None, alias="dateTo"),
        sort_by: str = Query(default="createdAt", alias="sortBy"),
        sort_order: str = Query(default="desc", alias="sortOrder"),
        mine: bool = False,
    ) -> dict[str, Any]:
        filters = TicketFilters(
            status=status,
            category_id=category,
            priority=priority,
            assigned_to=assigned_to,
            created_by=created_by,
            search=search,
            date_from=date_from,
            date_to=date_to,
            mine=mine,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        result = await helpdesk.tickets.list(principal, filters, page=page, page_size=limit)
        return ticket_page_to_dict(result)

    @app.get("/api/tickets/admin/statistics")
    async def ticket_statistics(
        principal: Principal = Depends(current_principal),
        date_from: str | None = Query(default=None, alias="dateFrom"),
        date_to: str | None = Query(default=None, alias="dateTo"),
    ) -> dict[str, Any]:
        overview = await helpdesk.statistics.overview(principal, date_from, date_to)
        return statistics_to_dict(overview)

    @app.get("/api/tickets/{ticket_id}")
    async def get_ticket(ticket_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return ticket_to_dict(await helpdesk.tickets.get(principal, ticket_id))

    @app.put("/api/tickets/{ticket_id}")
    async def update_ticket(
        ticket_id: str, body: TicketUpdateRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        view = await helpdesk.tickets.update(principal, ticket_id, body.model_dump(exclude_unset=True))
        return {"message": "Ticket updated successfully", "ticket": ticket_to_dict(view)}

    @app.patch("/api/tickets/{ticket_id}/assign")
    async def assign_ticket(
        ticket_id: str, body: AssignRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        view = await helpdesk.tickets.assign(principal, ticket_id, body.assigned_to)
        message = "Ticket assigned successfully" if body.assigned_to else "Ticket unassigned successfully"
        return {"message": message, "ticket": ticket_to_dict(view)}

    @app.post("/api/tickets/{ticket_id}/vote")
    async def vote_ticket(
        ticket_id: str, body: VoteRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        tally = await helpdesk.tickets.vote(principal, ticket_id, body.vote_type)
        return {
            "message": "Vote recorded successfully",
            "upvotes": tally.upvotes,
            "downvotes": tally.downvotes,
            "userVote": tally.user_vote,
        }

    @app.get("/api/tickets/{ticket_id}/comments")
    async def list_comments(ticket_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        comments = await helpdesk.comments.list(principal, ticket_id)
        return {"comments": [comment_to_dict(item) for item in comments]}

    @app.post("/api/tickets/{ticket_id}/comments", status_code=201)
    async def add_comment(
        ticket_id: str, body: CommentCreateRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        view = await helpdesk.comments.add(
            principal,
            ticket_id,
            body.message,
            is_internal=body.is_internal,
            attachments=resolve_attachments(body.attachments),
        )
        return {"message": "Comment added successfully", "comment": comment_to_dict(view)}

    # Categories

    @app.get("/api/categories")
    async def list_categories(
        principal: Principal = Depends(current_principal),
        is_active: str = Query(default="true", alias="isActive"),
    ) -> list[dict[str, Any]]:
        return [category_to_dict(item) for item in await helpdesk.categories.list(principal, is_active)]

    @app.post("/api/categories", status_code=201)
    async def create_category(
        body: CategoryCreateRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        category = await helpdesk.categories.create(principal, body.name, body.description, body.color)
        return {"message": "Category created successfully", "category": category_to_dict(category)}

    @app.get("/api/categories/{category_id}")
    async def get_category(category_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return category_to_dict(await helpdesk.categories.get(principal, category_id))

    @app.put("/api/categories/{category_id}")
    async def update_category(
        category_id: str, body: CategoryUpdateRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        category = await helpdesk.categories.update(principal, category_id, **body.model_dump(exclude_unset=True))
        return {"message": "Category updated successfully", "category": category_to_dict(category)}

    @app.delete("/api/categories/{category_id}")
    async def delete_category(category_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        await helpdesk.categories.delete(principal, category_id)
        return {"message": "Category deleted successfully"}

    @app.patch("/api/categories/{category_id}/toggle-status")
    async def toggle_category(category_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        category = await helpdesk.categories.toggle_active(principal, category_id)
        state = "activated" if category.is_active else "deactivated"
        return {"message": f"Category {state} successfully", "category": category_to_dict(category)}

    # Users

    @app.get("/api/users")
    async def list_users(
        principal: Principal = Depends(current_principal),
        role: str | None = None,
        search: str | None = None,
        is_active: bool | None = Query(default=None, alias="isActive"),
    ) -> dict[str, Any]:
        users = await helpdesk.users.list(principal, role=role, search=search, is_active=is_active)
        return {"users": [user_to_dict(item) for item in users]}

    @app.post("/api/users", status_code=201)
    async def register_user(body: UserCreateRequest, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        user = await helpdesk.users.register(principal, body.username, body.email, body.role)
        return {"message": "User created successfully", "user": user_to_dict(user)}

    @app.get("/api/users/agents")
    async def list_agents(principal: Principal = Depends(current_principal)) -> list[dict[str, Any]]:
        return [user_to_dict(item) for item in await helpdesk.users.list_agents(principal)]

    @app.get("/api/users/{user_id}")
    async def get_user(user_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return user_to_dict(await helpdesk.users.get(principal, user_id))

    @app.put("/api/users/{user_id}")
    async def update_user(
        user_id: str, body: UserUpdateRequest, principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        user = await helpdesk.users.update(principal, user_id, body.to_patch())
        return {"message": "User updated successfully", "user": user_to_dict(user)}

    @app.patch("/api/users/{user_id}/toggle-status")
    async def toggle_user(user_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        user = await helpdesk.users.toggle_active(principal, user_id)
        state = "activated" if user.is_active else "deactivated"
        return {"message": f"User {state} successfully", "user": user_to_dict(user)}

    @app.delete("/api/users/{user_id}")
    async def delete_user(user_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        await helpdesk.users.delete(principal, user_id)
        return {"message": "User deleted successfully"}

    @app.get("/api/users/{user_id}/dashboard")
    async def user_dashboard(user_id: str, principal: Principal = Depends(current_principal)) -> dict[str, Any]:
        return dashboard_to_dict(await helpdesk.statistics.user_dashboard(principal, user_id))

    # Attachments

    @app.post("/api/attachments", status_code=201)
    async def upload_attachments(
        files: list[UploadFile] = File(...), principal: Principal = Depends(current_principal)
    ) -> dict[str, Any]:
        helpdesk.blob_store.check_count(len(files), helpdesk.config.uploads.max_files_per_ticket)
        stored = []
        for upload in files:
            name = upload.filename or "upload"
            helpdesk.blob_store.check_extension(name)
            if upload.size is not None:
                helpdesk.blob_store.check_size(upload.size)
            data = await helpdesk.blob_store.read_limited(upload.read)
            stored.append(await helpdesk.blob_store.store(name, upload.content_type or "", data))
        LOGGER.info("Attachments uploaded. count=%s by=%s", len(stored), principal.id)
        return {"attachments": [attachment_to_dict(item) for item in stored]}

    return app
