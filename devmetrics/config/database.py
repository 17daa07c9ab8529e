"""Database handle construction.

The engine and session factory are owned by whoever calls `create_database`
(normally the process entry point) and passed into orchestrators and services.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import BigInteger, Integer, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from devmetrics.config.settings import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerId = BigInteger().with_variant(Integer, "sqlite")


@dataclass
class Database:
    """Engine plus session factory for one store."""

    engine: Engine
    session_factory: sessionmaker

    def session(self) -> Session:
        return self.session_factory()

    def create_all(self) -> None:
        # Import models so every table is registered on Base.metadata
        import devmetrics.models  # noqa: F401

        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def create_database(url: Optional[str] = None, *, echo: Optional[bool] = None) -> Database:
    """Build a `Database` for `url` (defaults to `settings.DATABASE_URL`)."""

    database_url = url or settings.DATABASE_URL
    engine_kwargs: dict = {
        "echo": settings.DATABASE_ECHO if echo is None else echo,
        "future": True,
    }

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # Single shared connection so every session sees the same in-memory store
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_recycle"] = 3600

    engine = create_engine(database_url, **engine_kwargs)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    logger.info("Database handle created", extra={"dialect": engine.dialect.name})
    return Database(engine=engine, session_factory=session_factory)
