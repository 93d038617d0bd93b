"""Database bootstrap helpers."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from onetouch.common.config import settings


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def build_session_factory(dsn: str | None = None, **engine_kwargs):
    """Create one engine and its session factory for the process."""

    engine = create_engine(dsn or settings.postgres_dsn, pool_pre_ping=True, **engine_kwargs)
    # `expire_on_commit=False` keeps ORM objects readable after commit.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
