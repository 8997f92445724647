import logging
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from chairtime.api.deps import get_notification_gateway, get_now, get_session, require_staff
from chairtime.api.schemas.appointment import BookAppointmentRequest, StatusUpdateRequest
from chairtime.core.intervals import as_utc
from chairtime.models.appointment import Appointment, AppointmentPublic
from chairtime.services import store
from chairtime.services.booking_service import book, cancel_appointment, get_appointment, update_status
from chairtime.services.notification_gateway import NotificationGateway, build_notice, send_notice

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])


def _to_public(a: Appointment) -> AppointmentPublic:
    """Public shape; stored naive UTC datetimes go out as aware UTC."""
    return AppointmentPublic(
        id=a.id,
        reference=a.reference,
        shop_id=a.shop_id,
        staff_id=a.staff_id,
        service_id=a.service_id,
        client_name=a.client_name,
        start_time=as_utc(a.start_time),
        end_time=as_utc(a.end_time),
        duration_minutes=a.duration_minutes,
        status=a.status,
        confirmation_sent_at=as_utc(a.confirmation_sent_at) if a.confirmation_sent_at else None,
        reminder_sent_at=as_utc(a.reminder_sent_at) if a.reminder_sent_at else None,
        created_at=as_utc(a.created_at),
    )


async def _notify(session: AsyncSession, gateway: NotificationGateway, appointment: Appointment, template_id: str, background_tasks: BackgroundTasks) -> None:
    shop = await store.get_shop(session, appointment.shop_id)
    service = await store.get_service(session, appointment.service_id)
    if shop and service:
        background_tasks.add_task(send_notice, gateway, build_notice(appointment, shop, service), template_id)


@router.post("", response_model=AppointmentPublic, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: BookAppointmentRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    gateway: NotificationGateway = Depends(get_notification_gateway),
    now: datetime = Depends(get_now),
) -> AppointmentPublic:
    """Book a slot. 409 means it was taken since availability was read: re-query, don't retry."""
    appointment = await book(session, body.to_create(), now)
    # Commit before confirming, so a client is never told about a booking that did not persist
    await session.commit()
    await _notify(session, gateway, appointment, "booking_confirmation", background_tasks)
    return _to_public(appointment)


@router.get("/{appointment_id}", response_model=AppointmentPublic)
async def read_appointment(
    appointment_id: str,
    session: AsyncSession = Depends(get_session),
) -> AppointmentPublic:
    return _to_public(await get_appointment(session, appointment_id))


@router.patch("/{appointment_id}/status", response_model=AppointmentPublic, dependencies=[Depends(require_staff)])
async def change_status(
    appointment_id: str,
    body: StatusUpdateRequest,
    session: AsyncSession = Depends(get_session),
    now: datetime = Depends(get_now),
) -> AppointmentPublic:
    appointment = await update_status(session, appointment_id, body.status, now)
    await session.commit()
    return _to_public(appointment)


@router.delete("/{appointment_id}", response_model=AppointmentPublic, dependencies=[Depends(require_staff)])
async def cancel(
    appointment_id: str,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    gateway: NotificationGateway = Depends(get_notification_gateway),
    now: datetime = Depends(get_now),
) -> AppointmentPublic:
    appointment = await cancel_appointment(session, appointment_id, now)
    await session.commit()
    await _notify(session, gateway, appointment, "cancellation_confirmed", background_tasks)
    return _to_public(appointment)
