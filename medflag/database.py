# medflag/database.py
from typing import Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger(__name__)

# Base class for models
Base = declarative_base()


def build_engine(database_url: str, statement_timeout_seconds: Optional[float] = None):
    """Create an engine; in-memory SQLite shares one connection across threads.

    On PostgreSQL every statement is cancelled by the server after
    ``statement_timeout_seconds``.
    """
    kwargs = {"pool_pre_ping": True, "echo": False}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    elif statement_timeout_seconds:
        kwargs["connect_args"] = {
            "options": f"-c statement_timeout={int(statement_timeout_seconds * 1000)}"
        }
    return create_engine(database_url, **kwargs)


def build_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def create_tables(bind):
    """Create all database tables - MUST import models first!"""
    # Import models to register them with Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind)
    logger.info("database_tables_created")
