import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from chairtime.core.config import settings
from chairtime.core.errors import NotFoundError, ValidationError
from chairtime.core.intervals import Interval, as_utc, local_window, merge, round_up_to_grid, subtract
from chairtime.models.shop import Shop, Staff
from chairtime.services import store

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class TimeSlot:
    start: datetime
    end: datetime
    staff_id: int


def shop_zone(shop: Shop) -> ZoneInfo:
    return ZoneInfo(shop.timezone or settings.default_timezone)


def validate_duration(duration_minutes: int) -> None:
    if duration_minutes <= 0:
        raise ValidationError("duration_minutes must be positive")
    if duration_minutes > settings.max_duration_minutes:
        raise ValidationError(f"duration_minutes may not exceed {settings.max_duration_minutes}")


async def require_shop(session: AsyncSession, shop_id: int) -> Shop:
    shop = await store.get_shop(session, shop_id)
    if not shop or not shop.is_active:
        raise NotFoundError(f"Shop {shop_id} not found")
    return shop


async def resolve_candidates(session: AsyncSession, shop: Shop, staff_id: int | None) -> list[Staff]:
    """The requested staff member, or every active staff member when any will do."""
    if staff_id is None:
        return await store.find_active_staff(session, shop.id)
    staff = await store.get_staff(session, staff_id)
    if not staff or staff.shop_id != shop.id or not staff.is_active:
        raise ValidationError(f"Staff member {staff_id} is not bookable at this shop")
    return [staff]


async def open_windows(
    session: AsyncSession, shop: Shop, staff_id: int, day: date, tz: ZoneInfo
) -> list[Interval]:
    """Business hours of ``day`` (shop-local) for one staff member, as UTC intervals."""
    windows = []
    for row in await store.find_business_hours(session, shop.id, day.weekday(), staff_id):
        if row.closes_at <= row.opens_at and row.closes_at != time(0):
            logger.warning("Ignoring business hours row %s: closes_at is not after opens_at", row.id)
            continue
        windows.append(local_window(day, row.opens_at, row.closes_at, tz))
    return merge(windows)


def slot_starts(free: Interval, duration_minutes: int, earliest: datetime) -> list[datetime]:
    """Grid-aligned starts inside ``free`` whose slot ends no later than ``free.end``."""
    granularity = settings.slot_granularity_minutes
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=granularity)
    cursor = round_up_to_grid(max(free.start, earliest), granularity)
    starts = []
    while cursor + duration <= free.end:
        starts.append(cursor)
        cursor += step
    return starts


async def _slots_for_staff(
    session: AsyncSession,
    shop: Shop,
    staff: Staff,
    day: date,
    tz: ZoneInfo,
    duration_minutes: int,
    earliest: datetime,
) -> list[TimeSlot]:
    windows = await open_windows(session, shop, staff.id, day, tz)
    if not windows:
        return []
    span = Interval(windows[0].start, windows[-1].end)
    booked = [
        Interval(a.start_time, a.end_time)
        for a in await store.find_scheduled_appointments(session, staff.id, span)
    ]
    slots = []
    for window in windows:
        for free in subtract(window, booked):
            for start in slot_starts(free, duration_minutes, earliest):
                slots.append(TimeSlot(start, start + timedelta(minutes=duration_minutes), staff.id))
    return slots


async def get_available_slots(
    session: AsyncSession,
    shop_id: int,
    day: date,
    duration_minutes: int,
    now: datetime,
    staff_id: int | None = None,
) -> list[TimeSlot]:
    """Bookable slots on a shop-local day, chronological then by staff order.

    With ``staff_id=None`` every active staff member is a candidate and the same
    start can appear once per free staff member. An empty list is a normal answer.
    """
    validate_duration(duration_minutes)
    shop = await require_shop(session, shop_id)
    tz = shop_zone(shop)
    earliest = as_utc(now) + timedelta(minutes=settings.min_lead_time_minutes)
    slots: list[TimeSlot] = []
    for staff in await resolve_candidates(session, shop, staff_id):
        slots.extend(await _slots_for_staff(session, shop, staff, day, tz, duration_minutes, earliest))
    slots.sort()
    logger.debug(
        "Availability shop=%s staff=%s day=%s duration=%s: %d slot(s)",
        shop_id, staff_id or "any", day.isoformat(), duration_minutes, len(slots),
    )
    return slots


async def check_slot(
    session: AsyncSession, shop_id: int, staff_id: int, interval: Interval
) -> tuple[bool, list[str]]:
    """Whether one exact interval is free for a staff member, with the ids that clash."""
    shop = await require_shop(session, shop_id)
    await resolve_candidates(session, shop, staff_id)
    clashing = await store.find_scheduled_appointments(session, staff_id, interval)
    return not clashing, [a.id for a in clashing]
