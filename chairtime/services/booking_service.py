import logging
import re
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chairtime.core.config import settings
from chairtime.core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from chairtime.core.intervals import Interval, as_utc, is_on_grid, to_local, to_naive_utc
from chairtime.models.appointment import Appointment, AppointmentCreate, AppointmentStatus, SlotClaim
from chairtime.models.shop import Shop
from chairtime.services import store
from chairtime.services.availability_service import (
    open_windows,
    require_shop,
    resolve_candidates,
    shop_zone,
    validate_duration,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    AppointmentStatus.SCHEDULED.value: {
        AppointmentStatus.COMPLETED.value,
        AppointmentStatus.CANCELLED.value,
        AppointmentStatus.NO_SHOW.value,
    },
}


def normalize_phone(phone: str | None) -> str | None:
    """E.164 form of a phone number; bare 10-digit numbers are taken as North American."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if phone.strip().startswith("+"):
        if not 8 <= len(digits) <= 15:
            raise ValidationError("Phone number must have 8 to 15 digits in international format")
        return f"+{digits}"
    if digits.startswith("1") and len(digits) == 11:
        digits = digits[1:]
    if len(digits) != 10:
        raise ValidationError("Phone number must be 10 digits or start with a country code")
    return f"+1{digits}"


async def _within_hours(session: AsyncSession, shop: Shop, staff_id: int, interval: Interval) -> bool:
    tz = shop_zone(shop)
    local_day = to_local(interval.start, tz).date()
    windows = await open_windows(session, shop, staff_id, local_day, tz)
    return any(w.contains(interval) for w in windows)


async def _pick_staff(session: AsyncSession, shop: Shop, interval: Interval) -> int:
    """First active staff member, by id, who works the whole interval and is free for it."""
    candidates = await resolve_candidates(session, shop, None)
    if not candidates:
        raise ValidationError("This shop has no bookable staff")
    working = [s for s in candidates if await _within_hours(session, shop, s.id, interval)]
    if not working:
        raise ValidationError("Requested time is outside business hours")
    for staff in working:
        if not await store.find_scheduled_appointments(session, staff.id, interval):
            return staff.id
    raise ConflictError("No staff member is free at the requested time", {"start": interval.start.isoformat()})


async def book(session: AsyncSession, data: AppointmentCreate, now: datetime) -> Appointment:
    """Validate a booking request and commit it through the store's conditional insert.

    Raises ValidationError for bad input, ConflictError when the slot is taken
    (also when another request takes it between our read and our insert) and
    lets TransientStoreError through untouched. Nothing here retries.
    """
    shop = await require_shop(session, data.shop_id)
    service = await store.get_service(session, data.service_id)
    if not service or service.shop_id != shop.id or not service.is_active:
        raise ValidationError(f"Service {data.service_id} is not offered by this shop")

    duration = service.duration_minutes if data.duration_minutes is None else data.duration_minutes
    validate_duration(duration)
    start = as_utc(data.start)
    if not is_on_grid(start, settings.slot_granularity_minutes):
        raise ValidationError(f"Start must fall on the {settings.slot_granularity_minutes}-minute grid")
    if start < as_utc(now) + timedelta(minutes=settings.min_lead_time_minutes):
        raise ValidationError(f"Bookings need at least {settings.min_lead_time_minutes} minutes notice")
    if not data.client_name.strip():
        raise ValidationError("Client name is required")
    phone = normalize_phone(data.client_phone)
    if not phone and not data.client_email:
        raise ValidationError("A phone number or email address is required")

    interval = Interval.of(start, duration)
    if data.staff_id is not None:
        await resolve_candidates(session, shop, data.staff_id)
        if not await _within_hours(session, shop, data.staff_id, interval):
            raise ValidationError("Requested time is outside business hours")
        staff_id = data.staff_id
    else:
        staff_id = await _pick_staff(session, shop, interval)

    appointment = await store.insert_appointment_if_free(
        session,
        staff_id,
        interval,
        {
            "shop_id": shop.id,
            "service_id": service.id,
            "client_name": data.client_name.strip(),
            "client_email": data.client_email,
            "client_phone": phone,
            "notes": data.notes,
        },
    )
    logger.info(
        "Booked appointment %s shop=%s staff=%s %s (%d min)",
        appointment.id, shop.id, staff_id, interval.start.isoformat(), duration,
    )
    return appointment


async def get_appointment(session: AsyncSession, appointment_id: str) -> Appointment:
    appointment = await store.get_appointment(session, appointment_id)
    if not appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return appointment


async def update_status(
    session: AsyncSession, appointment_id: str, new_status: AppointmentStatus, now: datetime
) -> Appointment:
    """Move a scheduled appointment to a final status; its time becomes bookable again.

    Reminder timestamps are left alone: a reminder that went out stays sent.
    """
    appointment = await get_appointment(session, appointment_id)
    if new_status.value not in ALLOWED_TRANSITIONS.get(appointment.status, set()):
        raise InvalidTransitionError(
            f"Cannot change appointment from {appointment.status} to {new_status.value}",
            {"status": appointment.status},
        )
    appointment.status = new_status.value
    appointment.updated_at = to_naive_utc(now)
    session.add(appointment)
    await store.release_claims(session, appointment.id)
    await session.flush()
    logger.info("Appointment %s is now %s", appointment.id, new_status.value)
    return appointment


async def cancel_appointment(session: AsyncSession, appointment_id: str, now: datetime) -> Appointment:
    """Soft delete: the row stays for history until the cleanup job purges it."""
    appointment = await update_status(session, appointment_id, AppointmentStatus.CANCELLED, now)
    appointment.deleted_at = to_naive_utc(now)
    session.add(appointment)
    await session.flush()
    return appointment


async def handle_sms_cancellation(
    session: AsyncSession, phone: str, reference: str, now: datetime
) -> Appointment:
    """Cancel the caller's scheduled appointment whose id starts with the quoted reference."""
    normalized = normalize_phone(phone)
    ref = reference.strip().lower()
    if not normalized or not ref:
        raise ValidationError("A phone number and booking reference are required")
    matches = [a for a in await store.find_scheduled_by_phone(session, normalized) if a.id.startswith(ref)]
    if not matches:
        raise NotFoundError("Appointment not found or already cancelled")
    return await cancel_appointment(session, matches[0].id, now)


async def purge_cancelled_older_than(session: AsyncSession, days: int, now: datetime) -> int:
    """Delete cancelled or soft-deleted appointments last touched more than `days` ago. Returns count deleted."""
    cutoff = to_naive_utc(now) - timedelta(days=days)
    async with store.translate_store_errors("purge_cancelled_older_than"):
        result = await session.execute(
            select(Appointment.id).where(
                or_(
                    Appointment.status == AppointmentStatus.CANCELLED.value,
                    Appointment.deleted_at.is_not(None),
                ),
                Appointment.updated_at < cutoff,
            )
        )
        ids = list(result.scalars().all())
        if not ids:
            return 0
        await session.execute(delete(SlotClaim).where(SlotClaim.appointment_id.in_(ids)))
        await session.execute(delete(Appointment).where(Appointment.id.in_(ids)))
        await session.flush()
    return len(ids)
