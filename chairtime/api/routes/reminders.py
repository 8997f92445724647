from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chairtime.api.deps import get_notification_gateway, get_now, get_session_maker, require_cron
from chairtime.api.schemas.reminders import ReminderRunResponse
from chairtime.models.appointment import ReminderKind
from chairtime.services.notification_gateway import NotificationGateway
from chairtime.services.reminder_service import FullRunResult, run_full, run_window

router = APIRouter(prefix="/reminders", tags=["reminders"], dependencies=[Depends(require_cron)])


@router.api_route("/run", methods=["GET", "POST"], response_model=ReminderRunResponse)
async def run_reminders(
    kind: ReminderKind | None = Query(None),
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    gateway: NotificationGateway = Depends(get_notification_gateway),
    now: datetime = Depends(get_now),
) -> ReminderRunResponse:
    """Called by the external scheduler. Without `kind` both windows run, 24h first."""
    if kind is None:
        result = await run_full(session_maker, gateway, now)
    else:
        result = FullRunResult(windows=[await run_window(session_maker, gateway, kind, now)])
    return ReminderRunResponse.from_result(result, now)
