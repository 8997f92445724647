import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENV"] = "test"
os.environ["CRON_SECRET"] = ""
os.environ["STAFF_API_TOKEN"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["SMTP_HOST"] = ""

from datetime import UTC, date, datetime, time  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import chairtime.models  # noqa: E402,F401 - register tables
from chairtime.core.config import settings  # noqa: E402
from chairtime.models.shop import BusinessHours, Service, Shop, Staff  # noqa: E402
from chairtime.services.notification_gateway import Channel, NotificationGateway, SendResult  # noqa: E402

# Monday 2 June 2025; New York is on EDT (UTC-4), so 09:00 local is 13:00 UTC.
MONDAY = date(2025, 6, 2)
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def utc(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=UTC)


class RecordingGateway(NotificationGateway):
    """Gateway double: records every send and fails for recipients listed in ``failing``."""

    def __init__(self, failing: set[str] | None = None, raising: set[str] | None = None) -> None:
        self.sent: list[tuple[Channel, str, str, dict]] = []
        self.failing = failing or set()
        self.raising = raising or set()

    async def send(self, channel: Channel, recipient: str, template_id: str, payload: dict) -> SendResult:
        if recipient in self.raising:
            raise RuntimeError("provider exploded")
        if recipient in self.failing:
            return SendResult(False, "provider rejected")
        self.sent.append((channel, recipient, template_id, payload))
        return SendResult(True)


@pytest.fixture(autouse=True)
def scheduling_policy(monkeypatch):
    monkeypatch.setattr(settings, "slot_granularity_minutes", 15)
    monkeypatch.setattr(settings, "min_lead_time_minutes", 60)
    monkeypatch.setattr(settings, "max_duration_minutes", 480)
    monkeypatch.setattr(settings, "notification_timeout_seconds", 10.0)
    monkeypatch.setattr(settings, "cron_secret", "")
    monkeypatch.setattr(settings, "staff_api_token", "")
    monkeypatch.setattr(settings, "env", "test")


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions really use separate connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chairtime.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def shop_setup(session_maker):
    """One New York shop open 09:00-17:00 every day, two staff, a 30-minute haircut and a 45-minute color."""
    async with session_maker() as session:
        shop = Shop(name="Main Street Barbers", slug="main-street", timezone="America/New_York", phone="+12125550100")
        session.add(shop)
        await session.flush()
        alex = Staff(shop_id=shop.id, display_name="Alex")
        sam = Staff(shop_id=shop.id, display_name="Sam")
        haircut = Service(shop_id=shop.id, name="Haircut", duration_minutes=30)
        color = Service(shop_id=shop.id, name="Color", duration_minutes=45)
        session.add_all([alex, sam, haircut, color])
        await session.flush()
        session.add_all(
            BusinessHours(shop_id=shop.id, weekday=wd, opens_at=time(9), closes_at=time(17)) for wd in range(7)
        )
        await session.commit()
        return {
            "shop_id": shop.id,
            "alex_id": alex.id,
            "sam_id": sam.id,
            "haircut_id": haircut.id,
            "color_id": color.id,
        }


@pytest.fixture
def gateway():
    return RecordingGateway()
