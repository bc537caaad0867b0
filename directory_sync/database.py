"""
Database engine and session management for the local user store.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


def create_db_engine(database_config: Optional[Dict[str, Any]] = None) -> Engine:
    """
    Create the SQLAlchemy engine for the configured database.

    SQLite connections are shared across threads so the scheduler thread and
    manual sync triggers can use the same store; in-memory databases use a
    single static connection.
    """
    database_config = database_config or {}
    db_url = database_config.get('url', 'sqlite:///directory_sync.db')
    echo = database_config.get('echo', False)

    if db_url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if db_url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        engine = create_engine(db_url, echo=echo, **kwargs)
    else:
        engine = create_engine(db_url, echo=echo, pool_pre_ping=True)

    logger.debug(f"Created database engine for {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Return a session factory bound to the engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    # Import models so they register with Base.metadata
    from directory_sync import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema initialized")
