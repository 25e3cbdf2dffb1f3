"""Database session management with connection pooling"""

from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from credits_gateway.config import settings


def engine_options(database_url: str) -> Dict[str, Any]:
    """Pool and timeout settings; every datastore call is bounded"""
    if database_url.startswith("sqlite"):
        # Busy timeout bounds waits on the SQLite writer lock
        return {
            "connect_args": {"check_same_thread": False, "timeout": settings.db_timeout_seconds},
        }

    # Connection pool: max 20 connections, recycle after 1 hour to avoid stale connections
    return {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": 10,
        "max_overflow": 10,
        "pool_recycle": 3600,
        "pool_timeout": settings.db_timeout_seconds,
        "connect_args": {
            "connect_timeout": int(settings.db_timeout_seconds),
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        },
    }


engine = create_engine(settings.database_url, **engine_options(settings.database_url))

SessionLocal = sessionmaker(autoflush=False, bind=engine)


def get_session_factory() -> sessionmaker:
    """Dependency injection for the session factory; ledger operations open their own sessions"""
    return SessionLocal
