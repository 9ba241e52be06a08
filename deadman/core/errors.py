"""
Custom exception hierarchy for the dead man's switch service.

Rule: every HTTP error has a machine-readable `code` string so clients
can branch on it without parsing English messages.

Read paths (status, history, handover lookup) degrade instead of raising;
these exceptions come from write paths triggered by explicit user action.
"""
from __future__ import annotations

from typing import Any

import structlog
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Exception classes
# ---------------------------------------------------------------------------

class DeadmanException(Exception):
    """Base class for all application-level errors."""
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotAuthenticatedError(DeadmanException):
    http_status = status.HTTP_401_UNAUTHORIZED
    code = "NOT_AUTHENTICATED"

    def __init__(self):
        super().__init__(message="User not authenticated.")


class AdminForbiddenError(DeadmanException):
    http_status = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"

    def __init__(self):
        super().__init__(message="A valid admin token is required.")


class UserNotFoundError(DeadmanException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: int):
        super().__init__(
            message=f"User {user_id} not found.",
            details={"user_id": user_id},
        )


class HandoverNotFoundError(DeadmanException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "HANDOVER_NOT_FOUND"

    def __init__(self, handover_id: int):
        super().__init__(
            message=f"Handover process {handover_id} not found.",
            details={"handover_id": handover_id},
        )


class HandoverNotActiveError(DeadmanException):
    http_status = status.HTTP_409_CONFLICT
    code = "HANDOVER_NOT_ACTIVE"

    def __init__(self, handover_id: int, current_status: str):
        super().__init__(
            message=f"Handover process {handover_id} is {current_status} and no longer accepts changes.",
            details={"handover_id": handover_id, "status": current_status},
        )


class SuccessorNotFoundError(DeadmanException):
    http_status = status.HTTP_404_NOT_FOUND
    code = "SUCCESSOR_NOT_FOUND"

    def __init__(self, successor_id: int, handover_id: int):
        super().__init__(
            message=f"Successor {successor_id} is not designated for handover {handover_id}.",
            details={"successor_id": successor_id, "handover_id": handover_id},
        )


class InvalidHandoverTransitionError(DeadmanException):
    http_status = status.HTTP_409_CONFLICT
    code = "INVALID_HANDOVER_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            message=f"Transition {from_status} -> {to_status} is not allowed.",
            details={"from": from_status, "to": to_status},
        )


class CheckInTokenInvalidError(DeadmanException):
    http_status = status.HTTP_410_GONE
    code = "CHECKIN_TOKEN_INVALID"

    def __init__(self, reason: str):
        super().__init__(message=reason, details={"reason": reason})


class InvalidSettingsError(DeadmanException):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INVALID_SETTINGS"

    def __init__(self, field: str, message: str):
        super().__init__(message=message, details={"field": field})


class InvalidActivityFilterError(DeadmanException):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "INVALID_FILTER"

    def __init__(self, invalid: list[str]):
        super().__init__(
            message=f"Unknown activity types: {', '.join(invalid)}.",
            details={"invalid": invalid},
        )


class SweepFailedError(DeadmanException):
    code = "SWEEP_FAILED"

    def __init__(self):
        super().__init__(message="The inactivity sweep failed; see the server log.")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

async def deadman_exception_handler(request: Request, exc: DeadmanException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return structured 422 with machine-readable field errors."""
    field_errors = []
    for error in exc.errors():
        field_errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "details": {"errors": field_errors},
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred.",
        },
    )
