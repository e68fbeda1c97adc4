"""Database module."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("database")


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the SQL token store.

    SQLite connections are shared with the worker threads that run store
    calls, and an in-memory database is pinned to a single connection.
    """
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set in your .env file!")

    kwargs: dict = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool

    logger.info("Creating database engine for %s", database_url.split("@")[-1])
    return create_engine(database_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to `engine`."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
