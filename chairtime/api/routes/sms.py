import logging
from datetime import datetime
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from chairtime.api.deps import get_now, get_session
from chairtime.core.config import settings
from chairtime.core.errors import NotFoundError, ValidationError
from chairtime.services import store
from chairtime.services.booking_service import handle_sms_cancellation
from chairtime.services.notification_gateway import build_notice
from chairtime.services.sms_service import render_sms, verify_twilio_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sms", tags=["sms"])


def _twiml(message: str) -> Response:
    body = f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{escape(message)}</Message></Response>'
    return Response(content=body, media_type="application/xml")


@router.post("/inbound")
async def inbound_sms(
    request: Request,
    session: AsyncSession = Depends(get_session),
    now: datetime = Depends(get_now),
) -> Response:
    """Twilio inbound-message webhook. Handles `CANCEL <ref>` replies to confirmations and reminders."""
    params = dict(await request.form())
    url = f"{settings.public_base_url.rstrip('/')}{request.url.path}" if settings.public_base_url else str(request.url)
    if not verify_twilio_signature(url, params, request.headers.get("X-Twilio-Signature")):
        logger.warning("Rejected inbound SMS with bad signature from %s", params.get("From"))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    words = params.get("Body", "").strip().split()
    if not words or words[0].upper() != "CANCEL":
        return _twiml("To cancel an appointment reply CANCEL followed by your booking reference.")
    if len(words) < 2:
        return _twiml("Please include your booking reference, e.g. CANCEL 1a2b3c4d.")

    try:
        appointment = await handle_sms_cancellation(session, params.get("From", ""), words[1], now)
    except (NotFoundError, ValidationError) as e:
        logger.info("SMS cancellation not applied for %s: %s", params.get("From"), e.message)
        return _twiml("We couldn't find an upcoming appointment with that reference.")
    await session.commit()

    shop = await store.get_shop(session, appointment.shop_id)
    service = await store.get_service(session, appointment.service_id)
    if shop and service:
        return _twiml(render_sms("cancellation_confirmed", build_notice(appointment, shop, service).payload))
    return _twiml(f"Your appointment {appointment.reference} has been cancelled.")
