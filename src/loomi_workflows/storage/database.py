"""
Database engine and session factory.

SQLite needs `check_same_thread=False` because persistence activities run on
the worker's thread pool. In-memory SQLite additionally needs a StaticPool so
every session sees the same database.
"""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False, pool_size: Optional[int] = None) -> Engine:
    """
    Create an engine and make sure all tables exist.

    `pool_size` caps the connections the engine opens (no overflow); it is
    ignored for in-memory SQLite, which shares a single connection.
    """
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    if pool_size and "poolclass" not in kwargs:
        kwargs["pool_size"] = pool_size
        kwargs["max_overflow"] = 0

    engine = create_engine(database_url, **kwargs)
    if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(engine)
    logger.info(f"Database ready: {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)
