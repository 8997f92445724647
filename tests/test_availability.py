import random
from datetime import time, timedelta

import pytest

from chairtime.core.config import settings
from chairtime.core.errors import ConflictError, NotFoundError, ValidationError
from chairtime.core.intervals import Interval, is_on_grid, overlaps
from chairtime.models.appointment import AppointmentCreate
from chairtime.models.shop import BusinessHours, Shop, Staff
from chairtime.services import store
from chairtime.services.availability_service import check_slot, get_available_slots
from chairtime.services.booking_service import book

from conftest import MONDAY, NOW, utc


async def _book(session, setup, start, minutes=30, staff_key="alex_id"):
    appointment = await book(
        session,
        AppointmentCreate(
            shop_id=setup["shop_id"],
            service_id=setup["haircut_id"],
            staff_id=setup[staff_key],
            start=start,
            duration_minutes=minutes,
            client_name="Jordan",
            client_phone="212-555-0199",
        ),
        NOW,
    )
    await session.commit()
    return appointment


@pytest.mark.asyncio
async def test_existing_appointment_removes_its_slot(session, shop_setup, monkeypatch):
    monkeypatch.setattr(settings, "slot_granularity_minutes", 30)
    await _book(session, shop_setup, utc(14))  # 10:00-10:30 New York

    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 30, NOW, staff_id=shop_setup["alex_id"])

    starts = [s.start for s in slots]
    expected = [utc(13) + timedelta(minutes=30 * i) for i in range(16)]
    expected.remove(utc(14))
    assert starts == expected
    assert starts[0] == utc(13)  # 09:00 local
    assert starts[-1] == utc(20, 30)  # 16:30 local
    assert all(s.end - s.start == timedelta(minutes=30) for s in slots)


@pytest.mark.asyncio
async def test_slot_ending_at_close_is_offered_and_touching_appointments_allowed(session, shop_setup):
    await _book(session, shop_setup, utc(14))

    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 30, NOW, staff_id=shop_setup["alex_id"])

    starts = [s.start for s in slots]
    assert utc(13, 30) in starts  # ends exactly when the booking starts
    assert utc(14, 30) in starts  # starts exactly when the booking ends
    assert utc(13, 45) not in starts
    assert utc(14, 15) not in starts
    assert starts[-1] == utc(20, 30)


@pytest.mark.asyncio
async def test_any_staff_lists_each_free_staff_member(session, shop_setup):
    await _book(session, shop_setup, utc(14))

    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 30, NOW)

    at_booked = [s.staff_id for s in slots if s.start == utc(14)]
    at_open = [s.staff_id for s in slots if s.start == utc(13)]
    assert at_booked == [shop_setup["sam_id"]]
    assert at_open == [shop_setup["alex_id"], shop_setup["sam_id"]]
    assert slots == sorted(slots)


@pytest.mark.asyncio
async def test_lead_time_hides_near_slots(session, shop_setup):
    now = utc(13, 5)  # 09:05 local on the day itself

    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 30, now, staff_id=shop_setup["alex_id"])

    assert slots[0].start == utc(14, 15)


@pytest.mark.asyncio
async def test_day_in_the_past_has_no_slots(session, shop_setup):
    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY - timedelta(days=2), 30, NOW)
    assert slots == []


@pytest.mark.asyncio
async def test_duration_longer_than_any_gap_gives_empty_list(session, shop_setup, monkeypatch):
    monkeypatch.setattr(settings, "max_duration_minutes", 720)
    assert await get_available_slots(session, shop_setup["shop_id"], MONDAY, 600, NOW) == []

    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 480, NOW, staff_id=shop_setup["alex_id"])
    assert [s.start for s in slots] == [utc(13)]

    await _book(session, shop_setup, utc(16, 30), minutes=15)
    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 240, NOW, staff_id=shop_setup["alex_id"])
    assert [s.start for s in slots] == [utc(16, 45), utc(17)]


@pytest.mark.asyncio
async def test_invalid_duration_is_rejected(session, shop_setup):
    with pytest.raises(ValidationError):
        await get_available_slots(session, shop_setup["shop_id"], MONDAY, 0, NOW)
    with pytest.raises(ValidationError):
        await get_available_slots(session, shop_setup["shop_id"], MONDAY, 481, NOW)


@pytest.mark.asyncio
async def test_unknown_shop_and_foreign_staff(session, shop_setup):
    with pytest.raises(NotFoundError):
        await get_available_slots(session, 9999, MONDAY, 30, NOW)
    with pytest.raises(ValidationError):
        await get_available_slots(session, shop_setup["shop_id"], MONDAY, 30, NOW, staff_id=9999)


@pytest.mark.asyncio
async def test_staff_hours_replace_shop_hours(session, shop_setup):
    session.add(
        BusinessHours(
            shop_id=shop_setup["shop_id"], staff_id=shop_setup["sam_id"], weekday=MONDAY.weekday(),
            opens_at=time(12), closes_at=time(14),
        )
    )
    await session.commit()

    sam = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 60, NOW, staff_id=shop_setup["sam_id"])
    alex = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 60, NOW, staff_id=shop_setup["alex_id"])

    assert [s.start for s in sam] == [utc(16), utc(16, 15), utc(16, 30), utc(16, 45), utc(17)]
    assert alex[0].start == utc(13)


@pytest.mark.asyncio
async def test_closed_day_and_split_hours(session, shop_setup):
    shop = Shop(name="Split Shift", slug="split-shift", timezone="America/Chicago")
    session.add(shop)
    await session.flush()
    kim = Staff(shop_id=shop.id, display_name="Kim")
    session.add(kim)
    session.add_all(
        [
            BusinessHours(shop_id=shop.id, weekday=0, opens_at=time(9), closes_at=time(12)),
            BusinessHours(shop_id=shop.id, weekday=0, opens_at=time(13), closes_at=time(15)),
            BusinessHours(shop_id=shop.id, weekday=0, opens_at=time(15), closes_at=time(14)),
        ]
    )
    await session.commit()

    slots = await get_available_slots(session, shop.id, MONDAY, 120, NOW)
    # Chicago is UTC-5 in June: 09:00-12:00 and 13:00-15:00 local
    assert [s.start for s in slots] == [utc(14), utc(14, 15), utc(14, 30), utc(14, 45), utc(15), utc(18)]
    assert await get_available_slots(session, shop.id, MONDAY + timedelta(days=1), 30, NOW) == []


@pytest.mark.asyncio
async def test_slots_never_collide_with_bookings(session, shop_setup):
    rng = random.Random(7)
    for _ in range(12):
        start = utc(13) + timedelta(minutes=15 * rng.randint(0, 28))
        minutes = 15 * rng.randint(1, 4)
        try:
            await _book(session, shop_setup, start, minutes=minutes)
        except ConflictError:
            pass

    hours = Interval(utc(13), utc(21))
    booked = [Interval(a.start_time, a.end_time) for a in await store.find_scheduled_appointments(session, shop_setup["alex_id"], hours)]
    for duration in (15, 30, 45, 90):
        for slot in await get_available_slots(session, shop_setup["shop_id"], MONDAY, duration, NOW, staff_id=shop_setup["alex_id"]):
            candidate = Interval(slot.start, slot.end)
            assert is_on_grid(slot.start, settings.slot_granularity_minutes)
            assert hours.contains(candidate)
            assert not any(overlaps(candidate, b) for b in booked)


@pytest.mark.asyncio
async def test_check_slot_reports_conflicts(session, shop_setup):
    existing = await _book(session, shop_setup, utc(14))

    free, conflicts = await check_slot(session, shop_setup["shop_id"], shop_setup["alex_id"], Interval.of(utc(14, 30), 30))
    assert free and conflicts == []

    free, conflicts = await check_slot(session, shop_setup["shop_id"], shop_setup["alex_id"], Interval.of(utc(13, 45), 30))
    assert not free
    assert conflicts == [existing.id]


@pytest.mark.asyncio
async def test_hours_closing_at_midnight(session, shop_setup):
    session.add(
        BusinessHours(
            shop_id=shop_setup["shop_id"], staff_id=shop_setup["sam_id"], weekday=MONDAY.weekday(),
            opens_at=time(22), closes_at=time(0),
        )
    )
    await session.commit()

    slots = await get_available_slots(session, shop_setup["shop_id"], MONDAY, 60, NOW, staff_id=shop_setup["sam_id"])

    # 22:00-24:00 New York is 02:00-04:00 UTC on the next calendar day
    next_day = MONDAY + timedelta(days=1)
    assert slots[0].start == utc(2, day=next_day)
    assert slots[-1].end == utc(4, day=next_day)
