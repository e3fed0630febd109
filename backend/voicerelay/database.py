"""Async SQLAlchemy engine and session factory.

The engine and session factory are built once by the application lifespan
and stored on ``app.state``. Routes receive a session through ``get_db``:

    from voicerelay.database import get_db

    @router.get("/items")
    async def list_items(db: AsyncSession = Depends(get_db)):
        result = await db.execute(select(Item))
        return result.scalars().all()
"""
from fastapi import Request
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_engine(database_url: str) -> AsyncEngine:
    """Create the async engine. Pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)
    return create_async_engine(
        database_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def upsert_for(db: AsyncSession):
    """Return the dialect's INSERT construct that supports ON CONFLICT."""
    if db.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


async def get_db(request: Request):
    """FastAPI dependency that yields an async DB session."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
