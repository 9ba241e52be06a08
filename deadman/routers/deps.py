"""
Shared router dependencies.

Identity
--------
Authentication happens upstream; the gateway forwards the caller's user id
in `X-User-Id`. Admin routes compare `X-Admin-Token` with ADMIN_TOKEN.

Activity tracking
-----------------
`track(activity_type)` resolves the caller and schedules a signed activity
record on the request's BackgroundTasks, so the write happens after the
response is sent and a failure there never fails the request.
"""
from __future__ import annotations

import hmac
from typing import Optional

from fastapi import BackgroundTasks, Depends, Header, Request
from sqlalchemy.orm import Session

from deadman.core.config import settings
from deadman.core.errors import AdminForbiddenError, NotAuthenticatedError, UserNotFoundError
from deadman.db.base import SessionLocal, get_db
from deadman.models.activity_record import ActivityType, ClientType
from deadman.models.user import User
from deadman.services.activity import record_activity_in_background
from deadman.services.scanner import InactivityScanner


def get_session_factory():
    """Session factory for work that outlives the request session."""
    return SessionLocal


def get_scanner(request: Request) -> InactivityScanner:
    return request.app.state.scanner


def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    if not x_user_id or not x_user_id.strip().isdigit():
        raise NotAuthenticatedError()
    user_id = int(x_user_id.strip())
    if db.get(User, user_id) is None:
        raise UserNotFoundError(user_id)
    return user_id


def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        raise AdminForbiddenError()


# ---------------------------------------------------------------------------
# Request metadata
# ---------------------------------------------------------------------------

def detect_client_type(request: Request) -> ClientType:
    explicit = (request.headers.get("x-client-type") or "").strip().lower()
    if explicit in ClientType._value2member_map_:
        return ClientType(explicit)

    user_agent = request.headers.get("user-agent") or ""
    if "Deadman-CLI" in user_agent:
        return ClientType.CLI
    if "Deadman-Mobile" in user_agent:
        return ClientType.MOBILE
    if any(marker in user_agent for marker in ("Mozilla", "Chrome", "Safari")):
        return ClientType.WEB
    return ClientType.API


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def track(activity_type: ActivityType):
    """Dependency factory: resolve the caller and log `activity_type` in the background."""

    def _track(
        request: Request,
        background_tasks: BackgroundTasks,
        user_id: int = Depends(get_current_user_id),
        session_factory=Depends(get_session_factory),
    ) -> int:
        background_tasks.add_task(
            record_activity_in_background,
            session_factory,
            user_id,
            activity_type,
            metadata={"method": request.method, "path": request.url.path},
            client_type=detect_client_type(request),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        return user_id

    return _track
