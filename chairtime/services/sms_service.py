import base64
import hashlib
import hmac
import logging

import httpx

from chairtime.core.config import settings

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"

SMS_TEMPLATES = {
    "booking_confirmation": (
        "Hi {client_name}! Your {service_name} at {shop_name} is booked for {start_display}. "
        "Reply CANCEL {reference} to cancel."
    ),
    "reminder_24h": (
        "Hi {client_name}! Reminder: you have a {service_name} appointment tomorrow at "
        "{time_display} at {shop_name}. Reply CANCEL {reference} to cancel."
    ),
    "reminder_2h": (
        "REMINDER: Your {service_name} appointment at {shop_name} starts in 2 hours "
        "({time_display}). Please don't be late! Reply CANCEL {reference} to cancel."
    ),
    "cancellation_confirmed": (
        "Your {service_name} appointment at {shop_name} on {start_display} has been cancelled. "
        "Ref: {reference}"
    ),
}


def render_sms(template_id: str, payload: dict) -> str:
    try:
        template = SMS_TEMPLATES[template_id]
    except KeyError:
        raise ValueError(f"Unknown SMS template {template_id!r}") from None
    return template.format(**payload)


async def send_sms(to_phone: str, body: str) -> tuple[bool, str | None]:
    """Send one SMS through the Twilio REST API. Returns (sent, error)."""
    if not settings.sms_enabled:
        logger.debug("SMS disabled (Twilio not configured), not sending to %s", to_phone)
        return False, "SMS provider not configured"
    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                TWILIO_MESSAGES_URL.format(account_sid=settings.twilio_account_sid),
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
                data={"To": to_phone, "From": settings.twilio_from_number, "Body": body},
                timeout=settings.notification_timeout_seconds,
            )
    except httpx.HTTPError as e:
        logger.warning("Twilio request failed for %s: %s", to_phone, e)
        return False, str(e)
    if response.status_code in (200, 201):
        logger.info("SMS sent to %s (sid %s)", to_phone, response.json().get("sid"))
        return True, None
    try:
        error = response.json()
        message = f"[{error.get('code')}] {error.get('message', 'Unknown error')}"
    except ValueError:
        message = f"HTTP {response.status_code}"
    logger.warning("Twilio rejected SMS to %s: %s", to_phone, message)
    return False, message


def compute_twilio_signature(auth_token: str, url: str, params: dict[str, str]) -> str:
    """Twilio's X-Twilio-Signature: base64 HMAC-SHA1 of the URL followed by sorted key+value pairs."""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_twilio_signature(url: str, params: dict[str, str], signature: str | None) -> bool:
    if not settings.twilio_auth_token:
        # Nothing to verify against; only acceptable outside production
        return settings.env != "production"
    if not signature:
        return False
    expected = compute_twilio_signature(settings.twilio_auth_token, url, params)
    return hmac.compare_digest(expected, signature)
