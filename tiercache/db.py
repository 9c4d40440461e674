"""
Database connection and setup
SQLite (or any SQLAlchemy URL) backing the persistent cache layers
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tiercache.models import Base


def create_cache_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the cache database.

    SQLite needs check_same_thread off since cache calls come from many threads;
    an in-memory SQLite database also needs a single shared connection.
    """
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def init_db(engine: Engine) -> None:
    """
    Initialize database - create the cache tables
    Safe to call multiple times (won't recreate existing tables)
    """
    Base.metadata.create_all(bind=engine)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to the cache engine."""
    return sessionmaker(autoflush=False, bind=engine, expire_on_commit=False)
