"""Database bootstrap helpers for the deposit service."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from cardfund.common.config import settings


# Single SQLAlchemy engine per process.
engine = create_engine(settings.postgres_dsn, pool_pre_ping=True)
# `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

# JSONB on PostgreSQL, plain JSON elsewhere (local SQLite runs).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def serializable(db):
    """Pin the session's transaction to SERIALIZABLE isolation.

    Must run before the first statement of the transaction.
    """

    db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
    return db


def is_serialization_failure(exc: Exception) -> bool:
    """True for PostgreSQL `40001` / `40P01` errors wrapped by SQLAlchemy."""

    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return code in {"40001", "40P01"}
