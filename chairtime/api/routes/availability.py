from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from chairtime.api.deps import get_now, get_session, require_staff
from chairtime.api.schemas.appointment import (
    AvailableSlotsResponse,
    SlotCheckRequest,
    SlotCheckResponse,
    SlotInfo,
)
from chairtime.core.errors import ValidationError
from chairtime.core.intervals import Interval, to_local
from chairtime.services import store
from chairtime.services.availability_service import check_slot, get_available_slots, require_shop, shop_zone

router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("", response_model=AvailableSlotsResponse)
async def available_slots(
    shop_id: int = Query(...),
    date_param: date = Query(..., alias="date"),
    staff_id: int | None = Query(None),
    duration_minutes: int | None = Query(None),
    service_id: int | None = Query(None),
    session: AsyncSession = Depends(get_session),
    now: datetime = Depends(get_now),
) -> AvailableSlotsResponse:
    """Bookable slots for a shop-local day. Omit staff_id for any staff member; an empty list is not an error."""
    if duration_minutes is None:
        service = await store.get_service(session, service_id) if service_id is not None else None
        if not service or service.shop_id != shop_id:
            raise ValidationError("Pass duration_minutes or a service_id offered by this shop")
        duration_minutes = service.duration_minutes
    slots = await get_available_slots(session, shop_id, date_param, duration_minutes, now, staff_id=staff_id)
    tz = shop_zone(await require_shop(session, shop_id))
    return AvailableSlotsResponse(
        date=date_param.isoformat(),
        shop_id=shop_id,
        staff_id=staff_id,
        timezone=str(tz),
        duration_minutes=duration_minutes,
        slots=[
            SlotInfo(
                start=s.start,
                end=s.end,
                staff_id=s.staff_id,
                local_start=to_local(s.start, tz).strftime("%Y-%m-%dT%H:%M"),
            )
            for s in slots
        ],
    )


@router.post("/check", response_model=SlotCheckResponse, dependencies=[Depends(require_staff)])
async def check_exact_slot(
    body: SlotCheckRequest,
    session: AsyncSession = Depends(get_session),
) -> SlotCheckResponse:
    available, conflicts = await check_slot(
        session, body.shop_id, body.staff_id, Interval.of(body.start, body.duration_minutes)
    )
    return SlotCheckResponse(available=available, conflicts=conflicts)
