# database.py
import asyncio
from typing import Any, Callable, TypeVar
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker

T = TypeVar("T")

# Base will be used to create our database models (the tables)
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """
    Creates the engine for the event store.
    SQLite needs check_same_thread off because sessions are opened from worker threads.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_size=20, max_overflow=30, pool_timeout=30)


def make_session_factory(engine: Engine) -> sessionmaker:
    # Each call of the factory is a new database session
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    import models  # noqa: F401  registers the tables on Base
    Base.metadata.create_all(bind=engine)


async def run_in_session(session_factory: sessionmaker, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Runs a crud function in a worker thread with its own session,
    so storage calls never block the event loop.
    """
    def _call() -> T:
        db = session_factory()
        try:
            return fn(db, *args, **kwargs)
        finally:
            db.close()

    return await asyncio.to_thread(_call)
