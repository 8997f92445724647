"""Reminder dispatch: finds appointments crossing the 24-hour and 2-hour marks and messages them once.

Each appointment carries one timestamp per reminder kind, and that timestamp is
the only record of "already sent". A run selects pending appointments in a
short read transaction, sends with no transaction open, then marks each
success with a conditional update in its own transaction. Re-running, or two
runs overlapping, cannot mark twice; a failed send leaves the timestamp unset
so the next run inside the band tries again.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chairtime.core.config import settings
from chairtime.core.errors import NotificationFailure, TransientStoreError
from chairtime.core.intervals import Interval, as_utc
from chairtime.models.appointment import ReminderKind
from chairtime.services import store
from chairtime.services.notification_gateway import (
    NotificationGateway,
    SendResult,
    build_notice,
    send_notice,
)

logger = logging.getLogger(__name__)


@dataclass
class WindowResult:
    kind: ReminderKind
    window: Interval
    selected: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def record_failure(self, failure: NotificationFailure) -> None:
        self.failed += 1
        self.errors.append(str(failure))


@dataclass
class FullRunResult:
    windows: list[WindowResult]

    @property
    def selected(self) -> int:
        return sum(w.selected for w in self.windows)

    @property
    def sent(self) -> int:
        return sum(w.sent for w in self.windows)

    @property
    def failed(self) -> int:
        return sum(w.failed for w in self.windows)

    @property
    def skipped(self) -> int:
        return sum(w.skipped for w in self.windows)


def reminder_window(kind: ReminderKind, now: datetime) -> Interval:
    """Tolerance band of start times due for ``kind``: offset +/- tolerance from now."""
    if kind is ReminderKind.DAY_BEFORE:
        offset, tolerance = settings.reminder_24h_offset_minutes, settings.reminder_24h_tolerance_minutes
    else:
        offset, tolerance = settings.reminder_2h_offset_minutes, settings.reminder_2h_tolerance_minutes
    now = as_utc(now)
    return Interval(
        now + timedelta(minutes=offset - tolerance),
        now + timedelta(minutes=offset + tolerance),
    )


async def _send_with_timeout(gateway: NotificationGateway, notice, template_id: str) -> SendResult:
    try:
        return await asyncio.wait_for(
            send_notice(gateway, notice, template_id), timeout=settings.notification_timeout_seconds
        )
    except TimeoutError:
        return SendResult(False, f"timed out after {settings.notification_timeout_seconds}s")
    except Exception as e:
        # One broken send must not stop the batch; the next run retries it.
        logger.exception("Notification gateway error for appointment %s", notice.appointment_id)
        return SendResult(False, f"{type(e).__name__}: {e}")


async def _mark_sent(
    session_maker: async_sessionmaker[AsyncSession], appointment_id: str, kind: ReminderKind, now: datetime
) -> bool:
    async with session_maker() as session:
        try:
            marked = await store.mark_reminder_sent(session, appointment_id, kind, now)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return marked


async def run_window(
    session_maker: async_sessionmaker[AsyncSession],
    gateway: NotificationGateway,
    kind: ReminderKind,
    now: datetime,
) -> WindowResult:
    window = reminder_window(kind, now)
    async with session_maker() as session:
        due = await store.find_appointments_in_window(session, kind, window)
        notices = [build_notice(appointment, shop, service) for appointment, shop, service in due]

    result = WindowResult(kind=kind, window=window, selected=len(notices))
    logger.info(
        "Reminder run %s: %d appointment(s) due between %s and %s",
        kind.value, len(notices), window.start.isoformat(), window.end.isoformat(),
    )
    for notice in notices:
        if notice.channel is None:
            result.skipped += 1
            logger.warning("Appointment %s has no phone or email; %s reminder skipped", notice.appointment_id, kind.value)
            continue
        outcome = await _send_with_timeout(gateway, notice, kind.template_id)
        if not outcome.ok:
            result.record_failure(NotificationFailure(notice.appointment_id, outcome.reason or "send failed"))
            continue
        try:
            marked = await _mark_sent(session_maker, notice.appointment_id, kind, now)
        except TransientStoreError as e:
            # Sent but not recorded; the next run inside the band will send again.
            result.record_failure(NotificationFailure(notice.appointment_id, f"sent but not recorded: {e}"))
            continue
        if marked:
            result.sent += 1
        else:
            result.skipped += 1
            logger.info("Appointment %s %s reminder already marked by another run", notice.appointment_id, kind.value)

    logger.info(
        "Reminder run %s done: sent=%d failed=%d skipped=%d",
        kind.value, result.sent, result.failed, result.skipped,
    )
    return result


async def run_full(
    session_maker: async_sessionmaker[AsyncSession], gateway: NotificationGateway, now: datetime
) -> FullRunResult:
    """Both windows in sequence, day-before first."""
    return FullRunResult(
        windows=[
            await run_window(session_maker, gateway, ReminderKind.DAY_BEFORE, now),
            await run_window(session_maker, gateway, ReminderKind.SOON, now),
        ]
    )
