"""Database connection and session management."""
from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from csv_worker.config import get_settings

Base = declarative_base()


@lru_cache
def get_engine() -> Engine:
    """Create the process-wide engine on first use."""
    settings = get_settings()
    if settings.database_url.startswith("sqlite"):
        return create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},
        )

    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )

    @event.listens_for(engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):
        """Bound every statement so a stuck commit surfaces as a retryable error."""
        cursor = dbapi_connection.cursor()
        cursor.execute("SET statement_timeout = '30s'")
        cursor.close()

    return engine


@lru_cache
def get_session_factory() -> sessionmaker:
    """Session factory bound to the process-wide engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def init_db() -> None:
    """Create tables for all registered models."""
    from csv_worker import models  # noqa: F401 - Import to register models

    Base.metadata.create_all(bind=get_engine())
