from chairtime.models.shop import BusinessHours, Service, Shop, Staff
from chairtime.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentPublic,
    AppointmentStatus,
    ReminderKind,
    SlotClaim,
)

__all__ = [
    "Shop",
    "Staff",
    "Service",
    "BusinessHours",
    "Appointment",
    "AppointmentCreate",
    "AppointmentPublic",
    "AppointmentStatus",
    "ReminderKind",
    "SlotClaim",
]
