from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from radarscan.config import settings


def _engine_options(url: str) -> dict:
    # SQLite (development, tests) does not accept pool sizing arguments.
    if url.startswith("sqlite"):
        return {"echo": False}
    return {"echo": False, "pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

AsyncSessionLocal: async_sessionmaker[AsyncSession] = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
