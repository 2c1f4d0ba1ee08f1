from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from netplane.models import Base


def create_db_engine(database_url: str) -> Engine:
    """Create an engine with per-backend connection options."""
    engine_kwargs: dict = dict(pool_pre_ping=True, future=True)

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url == "sqlite://":
            # One shared connection so every session sees the same database
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update(
            pool_recycle=300,  # Recycle connections after 5 minutes
            connect_args={"options": "-c statement_timeout=30000"},  # 30s max per SQL statement
        )

    return create_engine(database_url, **engine_kwargs)


def create_session_factory(database_url: str, create_tables: bool = False) -> sessionmaker:
    """Build a session factory bound to a fresh engine.

    Sessions keep loaded attributes after commit so records can be
    converted to schemas once the session is closed.
    """
    engine = create_db_engine(database_url)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
