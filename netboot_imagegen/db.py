"""Database engine and session management for netboot_imagegen.

This module provides SQLAlchemy engine creation, session factory,
and base model class for the artifact cache ledger.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def get_engine(db_url: str) -> Any:
    """Create and return a SQLAlchemy engine.

    For file-backed SQLite URLs the parent directory is created first.

    Args:
        db_url: Database URL.

    Returns:
        SQLAlchemy Engine instance.
    """
    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        prefix = "sqlite:///"
        if db_url.startswith(prefix) and db_url != f"{prefix}:memory:":
            Path(db_url[len(prefix) :]).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        db_url,
        connect_args=connect_args,
        echo=False,
    )


def get_session_factory(engine: Any) -> sessionmaker[Session]:
    """Create and return a session factory.

    Args:
        engine: SQLAlchemy engine.

    Returns:
        Session factory (sessionmaker).
    """
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session],
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Session factory.

    Yields:
        SQLAlchemy Session instance.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any) -> None:
    """Create all tables defined by ORM models.

    Args:
        engine: SQLAlchemy engine.
    """
    # Import all models so they are registered with the mapper
    from netboot_imagegen.artifacts import models as artifacts_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
