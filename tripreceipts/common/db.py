"""Database bootstrap for the (read-only) payment record store."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from tripreceipts.common.config import settings


def build_engine(dsn: str) -> Engine:
    """Engine for `dsn`; lookups run in worker threads, so SQLite is made thread-safe."""

    url = make_url(dsn)
    if url.get_backend_name() != "sqlite":
        return create_engine(
            url,
            pool_pre_ping=True,
            pool_timeout=settings.db_timeout_seconds,
            connect_args={"connect_timeout": settings.db_timeout_seconds},
        )
    options = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # One shared connection, otherwise each thread sees its own empty database.
        options["poolclass"] = StaticPool
    return create_engine(url, **options)


engine = build_engine(settings.postgres_dsn)
# `expire_on_commit=False` keeps ORM objects readable after the session closes.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
