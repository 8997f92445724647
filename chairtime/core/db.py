from collections.abc import AsyncGenerator
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from chairtime.core.config import settings


def to_async_url(url: str) -> str:
    """Use asyncpg for PostgreSQL. asyncpg does not accept psycopg params like sslmode/channel_binding.

    Any other URL (sqlite+aiosqlite, an explicit async driver) is returned unchanged.
    """
    parsed = urlparse(url)
    if parsed.scheme != "postgresql":
        return url
    scheme = "postgresql+asyncpg"
    query = parse_qs(parsed.query, keep_blank_values=True)
    query.pop("sslmode", None)
    query.pop("channel_binding", None)
    new_query = urlencode(query, doseq=True)
    return urlunparse((scheme, parsed.netloc, parsed.path, parsed.params, new_query, parsed.fragment))


async_database_url = to_async_url(settings.database_url)

engine_kwargs: dict = {"echo": settings.env == "development", "pool_pre_ping": True}
if not async_database_url.startswith("sqlite"):
    engine_kwargs.update(pool_size=5, max_overflow=10)
    if settings.database_ssl:
        engine_kwargs["connect_args"] = {"ssl": True}  # asyncpg uses this instead of sslmode

engine = create_async_engine(async_database_url, **engine_kwargs)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Workflows that open one short transaction per step take the factory, not a session."""
    return async_session_maker


async def init_db() -> None:
    """Create tables if using create_all; prefer Alembic in production."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
