from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import ClassVar

from fastapi import Request
from fastapi.responses import JSONResponse

LOGGER = logging.getLogger(__name__)


class HelpDeskError(RuntimeError):
    user_message: str = "An unexpected error occurred."
    field_name: str | None = None
    status_code: ClassVar[int] = 500

    def __str__(self) -> str:
        return self.user_message


@dataclass(slots=True)
class ValidationError(HelpDeskError):
    user_message: str = "The provided input is not valid."
    field_name: str | None = None
    status_code: ClassVar[int] = 400


@dataclass(slots=True)
class InvalidReferenceError(HelpDeskError):
    user_message: str = "A referenced record does not exist."
    field_name: str | None = None
    status_code: ClassVar[int] = 400


@dataclass(slots=True)
class AuthenticationError(HelpDeskError):
    user_message: str = "Authentication is required."
    field_name: str | None = None
    status_code: ClassVar[int] = 401


@dataclass(slots=True)
class ForbiddenError(HelpDeskError):
    user_message: str = "You do not have permission to run this action."
    field_name: str | None = None
    status_code: ClassVar[int] = 403


@dataclass(slots=True)
class NotFoundError(HelpDeskError):
    user_message: str = "The requested record could not be found."
    field_name: str | None = None
    status_code: ClassVar[int] = 404


@dataclass(slots=True)
class ConflictError(HelpDeskError):
    user_message: str = "The request conflicts with the current state."
    field_name: str | None = None
    retryable: bool = False
    status_code: ClassVar[int] = 409


@dataclass(slots=True)
class DuplicateVoteError(HelpDeskError):
    user_message: str = "You have already voted."
    field_name: str | None = None
    status_code: ClassVar[int] = 400


@dataclass(slots=True)
class RateLimitedError(HelpDeskError):
    user_message: str = "Too many requests. Try again later."
    field_name: str | None = None
    status_code: ClassVar[int] = 429


def error_payload(error: HelpDeskError) -> dict[str, object]:
    payload: dict[str, object] = {"message": error.user_message}
    if error.field_name:
        payload["field"] = error.field_name
    if isinstance(error, ConflictError) and error.retryable:
        payload["retryable"] = True
    return payload


async def handle_helpdesk_error(request: Request, error: HelpDeskError) -> JSONResponse:
    LOGGER.info(
        "Request rejected. method=%s path=%s status=%s reason=%s",
        request.method,
        request.url.path,
        error.status_code,
        error.user_message,
    )
    return JSONResponse(status_code=error.status_code, content=error_payload(error))


async def handle_unexpected_error(request: Request, error: Exception) -> JSONResponse:
    LOGGER.exception(
        "Request failed. method=%s path=%s",
        request.method,
        request.url.path,
        exc_info=error,
    )
    return JSONResponse(status_code=500, content={"message": HelpDeskError.user_message})
