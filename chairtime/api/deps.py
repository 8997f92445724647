import hmac
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chairtime.core.config import settings
from chairtime.core.db import get_session, get_session_maker  # noqa: F401 - re-exported for routes
from chairtime.services.notification_gateway import get_notification_gateway  # noqa: F401

security = HTTPBearer(auto_error=False)


def get_now() -> datetime:
    """Current instant; overridden in tests so nothing depends on the wall clock."""
    return datetime.now(UTC)


def _check_bearer(credentials: HTTPAuthorizationCredentials | None, secret: str, name: str) -> None:
    if not secret:
        if settings.env == "production":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"{name} is not configured",
            )
        return
    if (
        not credentials
        or credentials.scheme.lower() != "bearer"
        or not hmac.compare_digest(credentials.credentials, secret)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_cron(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> None:
    """Scheduler calls carry `Authorization: Bearer <CRON_SECRET>`."""
    _check_bearer(credentials, settings.cron_secret, "CRON_SECRET")


def require_staff(credentials: HTTPAuthorizationCredentials | None = Depends(security)) -> None:
    """Staff tools carry `Authorization: Bearer <STAFF_API_TOKEN>`; real user auth lives elsewhere."""
    _check_bearer(credentials, settings.staff_api_token, "STAFF_API_TOKEN")
