"""Appointment store: every read and write the scheduling core makes against the database.

Driver errors are translated here so callers only ever see the scheduling
error taxonomy: a broken slot-claim constraint is a ``ConflictError``, lost
connections and timeouts are a ``TransientStoreError``.
"""
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from chairtime.core.config import settings
from chairtime.core.errors import ConflictError, TransientStoreError
from chairtime.core.intervals import Interval, grid_cells, to_naive_utc
from chairtime.models.appointment import Appointment, AppointmentStatus, ReminderKind, SlotClaim
from chairtime.models.shop import BusinessHours, Service, Shop, Staff

logger = logging.getLogger(__name__)


@asynccontextmanager
async def translate_store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as exc:
        logger.warning("Store unavailable during %s: %s", operation, exc)
        raise TransientStoreError(f"Appointment store unavailable during {operation}") from exc


async def get_shop(session: AsyncSession, shop_id: int) -> Shop | None:
    async with translate_store_errors("get_shop"):
        return await session.get(Shop, shop_id)


async def get_service(session: AsyncSession, service_id: int) -> Service | None:
    async with translate_store_errors("get_service"):
        return await session.get(Service, service_id)


async def get_staff(session: AsyncSession, staff_id: int) -> Staff | None:
    async with translate_store_errors("get_staff"):
        return await session.get(Staff, staff_id)


async def get_appointment(session: AsyncSession, appointment_id: str) -> Appointment | None:
    async with translate_store_errors("get_appointment"):
        return await session.get(Appointment, appointment_id)


async def find_active_staff(session: AsyncSession, shop_id: int) -> list[Staff]:
    """Active staff of a shop in the stable order used to pick "any available" staff."""
    async with translate_store_errors("find_active_staff"):
        result = await session.execute(
            select(Staff)
            .where(Staff.shop_id == shop_id, Staff.is_active == True)  # noqa: E712
            .order_by(Staff.id)
        )
        return list(result.scalars().all())


async def find_business_hours(
    session: AsyncSession, shop_id: int, weekday: int, staff_id: int | None = None
) -> list[BusinessHours]:
    """Open intervals for a weekday, ordered by opening time.

    A staff member's own rows for the weekday replace the shop's rows entirely.
    """
    async with translate_store_errors("find_business_hours"):
        result = await session.execute(
            select(BusinessHours)
            .where(BusinessHours.shop_id == shop_id, BusinessHours.weekday == weekday)
            .order_by(BusinessHours.opens_at)
        )
        rows = list(result.scalars().all())
    if staff_id is not None:
        own = [r for r in rows if r.staff_id == staff_id]
        if own:
            return own
    return [r for r in rows if r.staff_id is None]


async def find_scheduled_appointments(
    session: AsyncSession, staff_id: int, interval: Interval
) -> list[Appointment]:
    """Scheduled, non-deleted appointments of one staff member that intersect ``interval``."""
    async with translate_store_errors("find_scheduled_appointments"):
        result = await session.execute(
            select(Appointment)
            .where(
                Appointment.staff_id == staff_id,
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.deleted_at.is_(None),
                Appointment.start_time < to_naive_utc(interval.end),
                Appointment.end_time > to_naive_utc(interval.start),
            )
            .order_by(Appointment.start_time)
        )
        return list(result.scalars().all())


async def insert_appointment_if_free(
    session: AsyncSession, staff_id: int, interval: Interval, payload: dict
) -> Appointment:
    """Create a scheduled appointment only if the staff member's interval is free.

    The overlap query gives a readable conflict in the common case. The slot
    claims are what make it safe under concurrency: every grid cell the
    interval covers gets a row unique per (staff_id, slot_start_utc), so of two
    racing inserts for overlapping intervals only one can commit. On conflict
    the session is rolled back, so nothing from this call is left behind.
    """
    clashing = await find_scheduled_appointments(session, staff_id, interval)
    if clashing:
        raise ConflictError(
            "Requested time is no longer available",
            {"staff_id": staff_id, "conflicting_ids": [a.id for a in clashing]},
        )
    appointment = Appointment(
        staff_id=staff_id,
        start_time=to_naive_utc(interval.start),
        end_time=to_naive_utc(interval.end),
        duration_minutes=int(interval.minutes),
        status=AppointmentStatus.SCHEDULED.value,
        **payload,
    )
    async with translate_store_errors("insert_appointment_if_free"):
        try:
            session.add(appointment)
            await session.flush()
            session.add_all(
                SlotClaim(staff_id=staff_id, slot_start_utc=to_naive_utc(cell), appointment_id=appointment.id)
                for cell in grid_cells(interval, settings.slot_granularity_minutes)
            )
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            logger.info("Slot claim collision for staff %s at %s", staff_id, interval.start.isoformat())
            raise ConflictError(
                "Requested time is no longer available", {"staff_id": staff_id}
            ) from exc
    return appointment


async def release_claims(session: AsyncSession, appointment_id: str) -> None:
    async with translate_store_errors("release_claims"):
        await session.execute(delete(SlotClaim).where(SlotClaim.appointment_id == appointment_id))


async def find_appointments_in_window(
    session: AsyncSession, kind: ReminderKind, interval: Interval
) -> list[tuple[Appointment, Shop, Service]]:
    """Scheduled appointments starting inside the band whose ``kind`` reminder is still pending."""
    pending = getattr(Appointment, kind.timestamp_field).is_(None)
    async with translate_store_errors("find_appointments_in_window"):
        result = await session.execute(
            select(Appointment, Shop, Service)
            .join(Shop, Shop.id == Appointment.shop_id)
            .join(Service, Service.id == Appointment.service_id)
            .where(
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.deleted_at.is_(None),
                Appointment.start_time >= to_naive_utc(interval.start),
                Appointment.start_time <= to_naive_utc(interval.end),
                pending,
            )
            .order_by(Appointment.start_time, Appointment.id)
        )
        return [(a, shop, svc) for a, shop, svc in result.all()]


async def mark_reminder_sent(
    session: AsyncSession, appointment_id: str, kind: ReminderKind, timestamp: datetime
) -> bool:
    """Set the reminder timestamp if it is still unset. False means another run already set it."""
    field = kind.timestamp_field
    async with translate_store_errors("mark_reminder_sent"):
        result = await session.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, getattr(Appointment, field).is_(None))
            .values({field: to_naive_utc(timestamp), "updated_at": to_naive_utc(timestamp)})
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


async def find_scheduled_by_phone(session: AsyncSession, phone: str) -> list[Appointment]:
    async with translate_store_errors("find_scheduled_by_phone"):
        result = await session.execute(
            select(Appointment)
            .where(
                Appointment.client_phone == phone,
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.deleted_at.is_(None),
            )
            .order_by(Appointment.start_time)
        )
        return list(result.scalars().all())
