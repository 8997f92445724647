from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _new_id() -> str:
    return uuid4().hex


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class ReminderKind(str, Enum):
    DAY_BEFORE = "24h"
    SOON = "2h"

    @property
    def timestamp_field(self) -> str:
        # 24h reminder doubles as the attendance confirmation request
        return "confirmation_sent_at" if self is ReminderKind.DAY_BEFORE else "reminder_sent_at"

    @property
    def template_id(self) -> str:
        return f"reminder_{self.value}"


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    id: str = Field(default_factory=_new_id, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    staff_id: int | None = Field(default=None, foreign_key="staff.id", index=True)
    service_id: int = Field(foreign_key="services.id")
    client_name: str
    client_email: str | None = None
    client_phone: str | None = None
    notes: str | None = None
    start_time: datetime = Field(index=True)
    end_time: datetime
    duration_minutes: int
    status: str = Field(default=AppointmentStatus.SCHEDULED.value, index=True)
    confirmation_sent_at: datetime | None = None
    reminder_sent_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_naive_now)
    updated_at: datetime = Field(default_factory=_utc_naive_now)

    @property
    def reference(self) -> str:
        """Short code printed in messages; clients quote it to cancel by SMS."""
        return self.id[:8]


class SlotClaim(SQLModel, table=True):
    """One grid cell of one staff member's time held by a scheduled appointment.

    The unique constraint is what stops two overlapping bookings for the same
    staff member from both committing, whatever process they run in.
    """

    __tablename__ = "slot_claims"
    __table_args__ = (UniqueConstraint("staff_id", "slot_start_utc", name="uq_slot_claims_staff_slot"),)
    id: int | None = Field(default=None, primary_key=True)
    staff_id: int = Field(foreign_key="staff.id")
    slot_start_utc: datetime
    appointment_id: str = Field(foreign_key="appointments.id", index=True)


class AppointmentCreate(SQLModel):
    shop_id: int
    service_id: int
    staff_id: int | None = None  # None books the first free staff member
    start: datetime
    duration_minutes: int | None = None  # defaults to the service duration
    client_name: str
    client_email: str | None = None
    client_phone: str | None = None
    notes: str | None = None


class AppointmentPublic(SQLModel):
    id: str
    reference: str
    shop_id: int
    staff_id: int | None = None
    service_id: int
    client_name: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: str
    confirmation_sent_at: datetime | None = None
    reminder_sent_at: datetime | None = None
    created_at: datetime
