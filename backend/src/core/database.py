# pyright: reportMissingTypeStubs=false
"""
Database configuration and session management.

This module defines the declarative base shared by all models and the
`Database` client: an explicitly constructed engine + session factory that
is created during application startup, handed to services and request
handlers, and disposed on shutdown.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Optional

from fastapi import HTTPException, Request
from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from core.constants import DB_POOL_RECYCLE_SECONDS

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator[datetime]):
    """
    Timestamp column that always round-trips as a timezone-aware UTC datetime.

    Values are normalized to UTC on the way in and re-tagged as UTC on the way
    out, so backends without native timezone support (SQLite) return the same
    absolute instants as PostgreSQL.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime cannot be stored: {value.isoformat()}")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Create Base class for declarative models
class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


# SQLAlchemy event listeners to automatically set created_at and updated_at in UTC
@event.listens_for(Base, "before_insert", propagate=True)  # type: ignore
def receive_before_insert(mapper, connection, target):  # type: ignore
    """Set created_at and updated_at on insert."""
    # Import here to avoid circular import
    from utils.datetime_utils import utc_now
    now = utc_now()
    for column_name in ("created_at", "updated_at"):
        if hasattr(mapper, "columns") and column_name in mapper.columns:  # type: ignore
            if getattr(target, column_name, None) is None:  # type: ignore
                setattr(target, column_name, now)  # type: ignore


@event.listens_for(Base, "before_update", propagate=True)  # type: ignore
def receive_before_update(mapper, connection, target):  # type: ignore
    """Set updated_at on update."""
    from utils.datetime_utils import utc_now
    if hasattr(mapper, "columns") and "updated_at" in mapper.columns:  # type: ignore
        setattr(target, "updated_at", utc_now())  # type: ignore


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine with settings appropriate for the backend.

    In-memory SQLite databases share one connection so every session sees the
    same schema and data.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, future=True, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=DB_POOL_RECYCLE_SECONDS,
        echo=echo,
        future=True,
    )


class Database:
    """
    Backing store client.

    Owns the engine and session factory. One instance is constructed at
    application startup and passed to everything that needs persistence.

    Attributes:
        engine: SQLAlchemy engine
        session_factory: Configured sessionmaker bound to the engine
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.url = database_url
        self.engine = build_engine(database_url, echo=echo)
        self.session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False,  # Don't expire objects after commit
        )

    def new_session(self) -> Session:
        """Create a session the caller is responsible for closing."""
        return self.session_factory()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Transactional session scope for background jobs and scripts.

        Commits on success, rolls back and re-raises on failure.

        Example:
            ```python
            with database.session() as db:
                connection = db.get(ExternalConnection, connection_id)
            ```
        """
        db = self.new_session()
        try:
            yield db
            db.commit()
        except HTTPException:
            # Don't log HTTPExceptions as errors - they're expected business logic
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            logger.exception(f"Database transaction failed: {e}")
            raise
        finally:
            db.close()

    def create_tables(self) -> None:
        """
        Create all tables defined in SQLAlchemy models.

        Note:
            In production, prefer Alembic migrations. This is used by tests and
            local SQLite setups.
        """
        # Import models so every table is registered on the metadata
        import models  # noqa: F401

        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.exception(f"Failed to create database tables: {e}")
            raise

    def drop_tables(self) -> None:
        """
        Drop all tables defined in SQLAlchemy models.

        WARNING: This will permanently delete all data in the tables!
        """
        try:
            Base.metadata.drop_all(bind=self.engine)
            logger.info("Database tables dropped successfully")
        except SQLAlchemyError as e:
            logger.exception(f"Failed to drop database tables: {e}")
            raise

    def dispose(self) -> None:
        """Release pooled connections. Called on application shutdown."""
        self.engine.dispose()
        logger.info("Database engine disposed")


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    FastAPI dependency to provide database sessions.

    Yields a session from the Database client attached to the application
    state. The session is closed after the request, and rolled back if the
    handler raised.

    Example:
        ```python
        @router.get("/items")
        def read_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
        ```
    """
    database: Database = request.app.state.database
    db = database.new_session()
    try:
        yield db
    except SQLAlchemyError as e:
        logger.exception(f"Database error: {e}")
        db.rollback()
        raise
    except HTTPException:
        db.rollback()
        raise
    except Exception as e:
        logger.exception(f"Unexpected error in database session: {e}")
        db.rollback()
        raise
    finally:
        db.close()
