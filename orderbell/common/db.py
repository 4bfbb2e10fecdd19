"""Database bootstrap helpers for the order store."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


def make_session_factory(dsn: str, **engine_kwargs) -> sessionmaker:
    """Build one engine + session factory for a DSN.

    The service builds a single factory per process in `main`; tests pass an
    in-memory SQLite DSN instead.
    """

    engine = create_engine(dsn, pool_pre_ping=True, **engine_kwargs)
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
