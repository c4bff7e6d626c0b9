"""Database bootstrap shared by every service.

All services read and write the one reconciliation database; there is no
per-service schema split.
"""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from momorecon.common.config import settings


def make_engine(dsn: str) -> Engine:
    """Build an engine for `dsn`.

    An in-memory SQLite DSN gets one shared connection so that every session
    sees the same tables; anything else gets a pre-pinged pool.
    """

    url = make_url(dsn)
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Handlers read ORM rows after commit when building responses and events.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = make_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)

# JSONB on PostgreSQL, plain JSON on every other dialect.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for reconciliation models."""
