from datetime import UTC, datetime, time

from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


class Shop(SQLModel, table=True):
    __tablename__ = "shops"
    id: int | None = Field(default=None, primary_key=True)
    name: str
    slug: str = Field(unique=True, index=True)
    timezone: str = "America/New_York"  # IANA name; business hours are wall-clock in this zone
    phone: str | None = None
    address: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utc_naive_now)


class Staff(SQLModel, table=True):
    __tablename__ = "staff"
    id: int | None = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    display_name: str
    phone: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utc_naive_now)


class Service(SQLModel, table=True):
    __tablename__ = "services"
    id: int | None = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    name: str
    duration_minutes: int = 30
    is_active: bool = True


class BusinessHours(SQLModel, table=True):
    """One open interval on one weekday. Rows with staff_id set override the shop's rows for that staff member.

    closes_at of 00:00 means open until midnight at the end of the day.
    """

    __tablename__ = "business_hours"
    id: int | None = Field(default=None, primary_key=True)
    shop_id: int = Field(foreign_key="shops.id", index=True)
    staff_id: int | None = Field(default=None, foreign_key="staff.id", index=True)
    weekday: int = Field(ge=0, le=6)  # 0 = Monday, matches date.weekday()
    opens_at: time
    closes_at: time
