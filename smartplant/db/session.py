"""
Database Connection Management

SQLAlchemy engine and session factory for the SQLModel tables.
Reads the database URL from application settings.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from smartplant.core.config import get_settings

logger = logging.getLogger(__name__)

# Initialize SQLAlchemy engine and session factory lazily
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite gets foreign key enforcement turned on and explicit BEGIN
    statements (pysqlite's implicit transactions break SAVEPOINT), and
    in-memory SQLite databases share a single connection so every session
    sees the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_sqlite(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory producing SQLModel sessions bound to ``engine``."""
    return sessionmaker(bind=engine, class_=Session, autoflush=False, expire_on_commit=False)


def get_engine() -> Engine:
    """
    Get or create the SQLAlchemy engine.

    Returns:
        SQLAlchemy engine instance
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, echo=settings.database_echo)
        url = settings.database_url
        logger.info(f"SQLAlchemy engine created: {url.split('@')[1] if '@' in url else url}")
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get or create the SQLAlchemy session factory.

    Returns:
        Session factory (sessionmaker instance)
    """
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = build_session_factory(get_engine())
    return _SessionLocal


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not exist yet."""
    # Importing the models registers their tables on SQLModel.metadata
    from smartplant.db import models  # noqa: F401

    SQLModel.metadata.create_all(engine or get_engine())


def close_engine() -> None:
    """
    Close the SQLAlchemy engine.
    Should be called on application shutdown.
    """
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
        logger.info("SQLAlchemy engine closed")
    _engine = None
    _SessionLocal = None
