from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from chairtime.models.appointment import AppointmentCreate, AppointmentStatus


class SlotInfo(BaseModel):
    start: datetime
    end: datetime
    staff_id: int
    local_start: str  # shop-local wall clock, e.g. 2025-03-10T09:30


class AvailableSlotsResponse(BaseModel):
    date: str  # YYYY-MM-DD, shop-local
    shop_id: int
    staff_id: int | None = None
    timezone: str
    duration_minutes: int
    slots: list[SlotInfo]


class SlotCheckRequest(BaseModel):
    shop_id: int
    staff_id: int
    start: datetime
    duration_minutes: int = Field(gt=0)


class SlotCheckResponse(BaseModel):
    available: bool
    conflicts: list[str]


class ClientInfo(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr | None = None
    phone: str | None = None


class BookAppointmentRequest(BaseModel):
    shop_id: int
    service_id: int
    staff_id: int | None = None
    start: datetime  # naive values are read as UTC
    duration_minutes: int | None = Field(default=None, gt=0)
    client: ClientInfo
    notes: str | None = Field(default=None, max_length=2000)

    def to_create(self) -> AppointmentCreate:
        return AppointmentCreate(
            shop_id=self.shop_id,
            service_id=self.service_id,
            staff_id=self.staff_id,
            start=self.start,
            duration_minutes=self.duration_minutes,
            client_name=self.client.name,
            client_email=self.client.email,
            client_phone=self.client.phone,
            notes=self.notes,
        )


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus
