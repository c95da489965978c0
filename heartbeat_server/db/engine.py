# heartbeat_server/db/engine.py
import logging
import os
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from heartbeat_server.conf import DEFAULT_DB_PATH
from heartbeat_server.db.models import Base

logger = logging.getLogger(__name__)

# Cache the engine and session factory to avoid recreating them
_engine = None
_session_factory = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def configure_engine(db_url: str | None = None):
    """(Re)create the engine for a database URL and make sure the schema exists."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()

    url = make_url(db_url or os.getenv("DATABASE_URL") or f"sqlite:///{DEFAULT_DB_PATH}")
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_engine(url, pool_pre_ping=True)

    # Create tables if they don't exist (checkfirst=True prevents errors if tables already exist)
    Base.metadata.create_all(bind=_engine, checkfirst=True)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.debug("Heartbeat DB schema ready → %s", url.render_as_string(hide_password=True))
    return _engine


def get_engine():
    """Get SQLAlchemy engine for the heartbeat database."""
    if _engine is None:
        configure_engine()
    return _engine


def get_session():
    """Get database session for the heartbeat database."""
    get_engine()
    return _session_factory()


def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
