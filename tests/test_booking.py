import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from chairtime.core.errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from chairtime.core.intervals import Interval
from chairtime.models.appointment import Appointment, AppointmentCreate, AppointmentStatus, SlotClaim
from chairtime.models.shop import Staff
from chairtime.services import store
from chairtime.services.booking_service import (
    book,
    cancel_appointment,
    get_appointment,
    handle_sms_cancellation,
    normalize_phone,
    purge_cancelled_older_than,
    update_status,
)

from conftest import NOW, utc


def request(setup, start, staff_key="alex_id", **overrides):
    data = {
        "shop_id": setup["shop_id"],
        "service_id": setup["haircut_id"],
        "staff_id": setup[staff_key] if staff_key else None,
        "start": start,
        "client_name": "Jordan Lee",
        "client_phone": "(212) 555-0199",
    }
    data.update(overrides)
    return AppointmentCreate(**data)


@pytest.mark.asyncio
async def test_book_stores_scheduled_appointment(session, shop_setup):
    appointment = await book(session, request(shop_setup, utc(14)), NOW)
    await session.commit()

    stored = await get_appointment(session, appointment.id)
    assert stored.status == AppointmentStatus.SCHEDULED.value
    assert stored.staff_id == shop_setup["alex_id"]
    assert stored.duration_minutes == 30
    assert stored.end_time - stored.start_time == timedelta(minutes=30)
    assert stored.client_phone == "+12125550199"
    assert stored.confirmation_sent_at is None and stored.reminder_sent_at is None
    assert len(stored.reference) == 8
    claims = (await session.execute(select(func.count()).select_from(SlotClaim))).scalar_one()
    assert claims == 2


@pytest.mark.asyncio
async def test_duration_defaults_to_service(session, shop_setup):
    appointment = await book(session, request(shop_setup, utc(14), service_id=shop_setup["color_id"]), NOW)
    assert appointment.duration_minutes == 45


@pytest.mark.parametrize(
    "start, overrides",
    [
        (utc(14, 5), {}),  # off the grid
        (utc(20, 45), {}),  # runs past closing
        (utc(12, 30), {}),  # before opening
        (utc(14), {"duration_minutes": 0}),
        (utc(14), {"duration_minutes": 600}),
        (utc(14), {"client_phone": None, "client_email": None}),
        (utc(14), {"client_phone": "12345"}),
        (utc(14), {"client_name": "   "}),
        (utc(14), {"service_id": 9999}),
        (utc(14), {"staff_id": 9999}),
    ],
)
@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(session, shop_setup, start, overrides):
    with pytest.raises(ValidationError):
        await book(session, request(shop_setup, start, **overrides), NOW)


@pytest.mark.asyncio
async def test_lead_time_is_enforced(session, shop_setup):
    with pytest.raises(ValidationError):
        await book(session, request(shop_setup, utc(14)), utc(13, 30))
    appointment = await book(session, request(shop_setup, utc(14, 30)), utc(13, 30))
    assert appointment.start_time == utc(14, 30).replace(tzinfo=None)


@pytest.mark.asyncio
async def test_unknown_shop_is_not_found(session, shop_setup):
    with pytest.raises(NotFoundError):
        await book(session, request(shop_setup, utc(14), shop_id=9999), NOW)


@pytest.mark.asyncio
async def test_overlapping_booking_conflicts(session, shop_setup):
    first = await book(session, request(shop_setup, utc(14)), NOW)
    await session.commit()

    with pytest.raises(ConflictError) as exc:
        await book(session, request(shop_setup, utc(14, 15)), NOW)
    assert exc.value.details["conflicting_ids"] == [first.id]

    # Another staff member at the same time is fine
    other = await book(session, request(shop_setup, utc(14, 15), staff_key="sam_id"), NOW)
    assert other.staff_id == shop_setup["sam_id"]


@pytest.mark.asyncio
async def test_touching_bookings_are_compatible(session, shop_setup):
    await book(session, request(shop_setup, utc(14)), NOW)
    await book(session, request(shop_setup, utc(14, 30)), NOW)
    await book(session, request(shop_setup, utc(13, 30)), NOW)
    await session.commit()

    booked = await store.find_scheduled_appointments(session, shop_setup["alex_id"], Interval(utc(13), utc(15)))
    assert [a.start_time.hour * 60 + a.start_time.minute for a in booked] == [13 * 60 + 30, 14 * 60, 14 * 60 + 30]


@pytest.mark.asyncio
async def test_any_staff_takes_first_free_by_id(session, shop_setup):
    first = await book(session, request(shop_setup, utc(14), staff_key=None), NOW)
    second = await book(session, request(shop_setup, utc(14), staff_key=None), NOW)
    assert (first.staff_id, second.staff_id) == (shop_setup["alex_id"], shop_setup["sam_id"])

    with pytest.raises(ConflictError):
        await book(session, request(shop_setup, utc(14), staff_key=None), NOW)


@pytest.mark.asyncio
async def test_any_staff_with_no_staff_is_invalid(session, shop_setup):
    for staff_id in (shop_setup["alex_id"], shop_setup["sam_id"]):
        staff = await session.get(Staff, staff_id)
        staff.is_active = False
    await session.commit()

    with pytest.raises(ValidationError):
        await book(session, request(shop_setup, utc(14), staff_key=None), NOW)


async def _attempt(session_maker, data):
    async with session_maker() as session:
        try:
            appointment = await book(session, data, NOW)
            await session.commit()
            return appointment
        except ConflictError as e:
            return e


@pytest.mark.asyncio
async def test_simultaneous_bookings_have_one_winner(session_maker, shop_setup):
    color = shop_setup["color_id"]
    results = await asyncio.gather(
        _attempt(session_maker, request(shop_setup, utc(18), service_id=color, client_name="First")),
        _attempt(session_maker, request(shop_setup, utc(18), service_id=color, client_name="Second")),
    )

    winners = [r for r in results if isinstance(r, Appointment)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1 and len(losers) == 1

    async with session_maker() as session:
        rows = (await session.execute(select(Appointment))).scalars().all()
        claims = (await session.execute(select(func.count()).select_from(SlotClaim))).scalar_one()
    assert [r.id for r in rows] == [winners[0].id]
    assert claims == 3


@pytest.mark.asyncio
async def test_racing_overlapping_intervals_have_one_winner(session_maker, shop_setup):
    starts = [utc(15), utc(15, 15), utc(15, 30), utc(15), utc(15, 15)]
    results = await asyncio.gather(
        *(
            _attempt(session_maker, request(shop_setup, start, service_id=shop_setup["color_id"], client_name=f"C{i}"))
            for i, start in enumerate(starts)
        )
    )
    winners = [r for r in results if isinstance(r, Appointment)]
    assert len(winners) == 1
    async with session_maker() as session:
        count = (await session.execute(select(func.count()).select_from(Appointment))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_status_transitions(session, shop_setup):
    appointment = await book(session, request(shop_setup, utc(14)), NOW)
    await session.commit()

    done = await update_status(session, appointment.id, AppointmentStatus.COMPLETED, NOW)
    assert done.status == AppointmentStatus.COMPLETED.value

    with pytest.raises(InvalidTransitionError):
        await update_status(session, appointment.id, AppointmentStatus.CANCELLED, NOW)
    with pytest.raises(NotFoundError):
        await update_status(session, "missing", AppointmentStatus.CANCELLED, NOW)

    # A finished appointment no longer holds the chair
    again = await book(session, request(shop_setup, utc(14)), NOW)
    assert again.staff_id == shop_setup["alex_id"]


@pytest.mark.asyncio
async def test_cancel_is_soft_delete_and_frees_time(session, shop_setup):
    appointment = await book(session, request(shop_setup, utc(14)), NOW)
    await session.commit()

    cancelled = await cancel_appointment(session, appointment.id, NOW)
    await session.commit()

    assert cancelled.status == AppointmentStatus.CANCELLED.value
    assert cancelled.deleted_at is not None
    assert await get_appointment(session, appointment.id)
    rebooked = await book(session, request(shop_setup, utc(14)), NOW)
    await session.commit()
    assert rebooked.id != appointment.id


@pytest.mark.asyncio
async def test_sms_cancellation_by_reference(session, shop_setup):
    appointment = await book(session, request(shop_setup, utc(14)), NOW)
    await session.commit()

    with pytest.raises(NotFoundError):
        await handle_sms_cancellation(session, "+12125550000", appointment.reference, NOW)
    with pytest.raises(NotFoundError):
        await handle_sms_cancellation(session, "+12125550199", "zzzzzzzz", NOW)

    cancelled = await handle_sms_cancellation(session, "+12125550199", appointment.reference.upper(), NOW)
    assert cancelled.id == appointment.id
    assert cancelled.status == AppointmentStatus.CANCELLED.value

    with pytest.raises(NotFoundError):
        await handle_sms_cancellation(session, "+12125550199", appointment.reference, NOW)


@pytest.mark.asyncio
async def test_purge_removes_only_old_cancellations(session, shop_setup):
    old = await book(session, request(shop_setup, utc(14)), NOW)
    recent = await book(session, request(shop_setup, utc(15)), NOW)
    kept = await book(session, request(shop_setup, utc(16)), NOW)
    await session.commit()
    await cancel_appointment(session, old.id, NOW - timedelta(days=8))
    await cancel_appointment(session, recent.id, NOW - timedelta(days=2))
    await session.commit()

    assert await purge_cancelled_older_than(session, 7, NOW) == 1
    await session.commit()

    remaining = {a.id for a in (await session.execute(select(Appointment))).scalars().all()}
    assert remaining == {recent.id, kept.id}
    assert await purge_cancelled_older_than(session, 7, NOW) == 0


def test_normalize_phone():
    assert normalize_phone("212-555-0199") == "+12125550199"
    assert normalize_phone("1 (212) 555 0199") == "+12125550199"
    assert normalize_phone("+44 20 7946 0958") == "+442079460958"
    assert normalize_phone("") is None
    with pytest.raises(ValidationError):
        normalize_phone("555-0199")


@pytest.mark.asyncio
async def test_explicit_zero_duration_is_not_replaced_by_service_default(session, shop_setup):
    with pytest.raises(ValidationError):
        await book(session, request(shop_setup, utc(14), duration_minutes=0), NOW)
    assert await store.find_scheduled_appointments(session, shop_setup["alex_id"], Interval(utc(13), utc(21))) == []
