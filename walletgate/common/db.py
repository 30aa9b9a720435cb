"""Database bootstrap helpers for the credential store.

The engine and session factory are created by the application factory at
process start and injected into every service.
"""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool


# JSONB on postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def make_engine(url: str, pool_timeout: int = 10) -> Engine:
    """Create one engine per process for the configured database URL."""

    if url.startswith("sqlite"):
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            # One shared connection so every session sees the same in-memory database.
            return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        return create_engine(url, connect_args={"check_same_thread": False}, pool_timeout=pool_timeout)
    return create_engine(url, pool_pre_ping=True, pool_timeout=pool_timeout)


def make_session_factory(engine: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    """Create all tables known to the declarative base."""

    # Model modules register their tables on import.
    from walletgate.services.accounts import models as _accounts  # noqa: F401
    from walletgate.services.grants import models as _grants  # noqa: F401
    from walletgate.services.ledger import models as _ledger  # noqa: F401
    from walletgate.services.registry import models as _registry  # noqa: F401

    Base.metadata.create_all(engine)
