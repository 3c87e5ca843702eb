"""Database bootstrap helpers shared by all components."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from payledger.common.config import settings


JSONType = JSON().with_variant(JSONB(), "postgresql")


def build_engine(url: str):
    """Create an engine; in-memory SQLite shares one connection across sessions."""

    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":")):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, pool_pre_ping=True)


def build_session_factory(bind):
    # `expire_on_commit=False` keeps ORM objects readable after commit in callers.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


# Single SQLAlchemy engine per process.
engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
