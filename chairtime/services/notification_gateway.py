"""Outbound notifications: one ``send`` call per message, success or a failure reason back.

The gateway never raises for delivery problems; providers that are down,
unconfigured or reject a message all come back as ``SendResult(ok=False)``.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from zoneinfo import ZoneInfo

from chairtime.core.config import settings
from chairtime.core.intervals import to_local
from chairtime.models.appointment import Appointment
from chairtime.models.shop import Service, Shop
from chairtime.services import email_service, sms_service

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


@dataclass(frozen=True)
class SendResult:
    ok: bool
    reason: str | None = None


@dataclass
class AppointmentNotice:
    """Everything needed to message a client about one appointment, detached from the session."""

    appointment_id: str
    channel: Channel | None
    recipient: str | None
    payload: dict = field(default_factory=dict)


def build_notice(appointment: Appointment, shop: Shop, service: Service) -> AppointmentNotice:
    if appointment.client_phone:
        channel, recipient = Channel.SMS, appointment.client_phone
    elif appointment.client_email:
        channel, recipient = Channel.EMAIL, appointment.client_email
    else:
        channel, recipient = None, None
    local_start = to_local(appointment.start_time, ZoneInfo(shop.timezone or settings.default_timezone))
    return AppointmentNotice(
        appointment_id=appointment.id,
        channel=channel,
        recipient=recipient,
        payload={
            "client_name": appointment.client_name,
            "service_name": service.name,
            "shop_name": shop.name,
            "shop_phone": shop.phone or "",
            "start_display": local_start.strftime("%A, %B %d at %I:%M %p %Z"),
            "time_display": local_start.strftime("%I:%M %p").lstrip("0"),
            "duration_minutes": appointment.duration_minutes,
            "reference": appointment.reference,
        },
    )


class NotificationGateway(ABC):
    @abstractmethod
    async def send(self, channel: Channel, recipient: str, template_id: str, payload: dict) -> SendResult:
        ...


class ProviderNotificationGateway(NotificationGateway):
    """SMS through Twilio, email through SMTP (blocking, so it runs in a worker thread)."""

    async def send(self, channel: Channel, recipient: str, template_id: str, payload: dict) -> SendResult:
        if channel is Channel.SMS:
            ok, error = await sms_service.send_sms(recipient, sms_service.render_sms(template_id, payload))
        elif channel is Channel.EMAIL:
            subject, html = email_service.render_email(template_id, payload)
            ok, error = await asyncio.to_thread(email_service.send_email_sync, recipient, subject, html)
        else:
            return SendResult(False, f"Unsupported channel {channel!r}")
        return SendResult(ok, error)


async def send_notice(gateway: NotificationGateway, notice: AppointmentNotice, template_id: str) -> SendResult:
    if notice.channel is None or not notice.recipient:
        return SendResult(False, "No phone number or email on file")
    result = await gateway.send(notice.channel, notice.recipient, template_id, notice.payload)
    if not result.ok:
        logger.warning(
            "%s via %s failed for appointment %s: %s",
            template_id, notice.channel.value, notice.appointment_id, result.reason,
        )
    return result


_gateway = ProviderNotificationGateway()


def get_notification_gateway() -> NotificationGateway:
    return _gateway
