from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from marketplace.errors import StorageError


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def transaction(sessions: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Open a session and run the block as a single unit of work.

    Commits when the block exits cleanly, rolls back on any exception.
    Database failures are re-raised as StorageError; domain errors raised
    inside the block propagate unchanged after the rollback.
    """
    async with sessions() as db:
        try:
            async with db.begin():
                yield db
        except SQLAlchemyError as exc:
            raise StorageError(f"Database operation failed: {exc.__class__.__name__}") from exc


@asynccontextmanager
async def read_session(sessions: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with sessions() as db:
        try:
            yield db
        except SQLAlchemyError as exc:
            raise StorageError(f"Database read failed: {exc.__class__.__name__}") from exc
