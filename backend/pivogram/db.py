from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from .config import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: str) -> AsyncEngine:
    # sqlite connections must not outlive the event loop that opened them
    if url.startswith("sqlite"):
        return create_async_engine(url, poolclass=NullPool)
    return create_async_engine(url, pool_pre_ping=True)

def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, expire_on_commit=False)

engine = make_engine(settings.database_url)
SessionLocal = make_sessionmaker(engine)

async def init_db(bind: AsyncEngine | None = None) -> None:
    from . import models  # noqa: F401  (registers tables on Base.metadata)
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
