"""
billing_relay/db.py

Database connection management for the billing relay.

Design principles:
    1. Environment-driven: DATABASE_URL from Railway/AWS/Supabase
    2. Connection pooling: Sized for container workloads
    3. Scoped sessions: Thread-safe, auto-cleanup per request
    4. Provider-agnostic: Any PostgreSQL host; SQLite for local tests

Usage:
    from billing_relay.db import configure_engine, get_db, init_db

    # In app startup:
    configure_engine(config.database_url, password=config.database_password)
    init_db(app)

    # In request handlers:
    db = get_db()
    record = db.query(UserQuotaRecord).filter_by(user_id=user_id).first()

Version History:
    2026-10-19: Engine built by configure_engine() from RelayConfig;
                SQLite supported for local runs
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, scoped_session, Session
from sqlalchemy.pool import QueuePool


# =============================================================================
# CONFIGURATION
# =============================================================================

def normalize_database_url(url: str, password: Optional[str] = None):
    """
    Normalize a database URL.

    Heroku/Railway/Supabase sometimes hand out 'postgres://' which
    SQLAlchemy 2.0 doesn't accept. A separately supplied service
    credential replaces the password part of the URL.
    """
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)

    parsed = make_url(url)
    if password:
        parsed = parsed.set(password=password)
    return parsed


# PostgreSQL pool; a relay instance serves a few gunicorn threads
POOL_CONFIG = {
    'poolclass': QueuePool,
    'pool_size': 5,           # Steady-state connections
    'max_overflow': 10,       # Burst headroom
    'pool_timeout': 30,       # Overridden by DB_POOL_TIMEOUT
    'pool_recycle': 1800,     # Seconds before a connection is replaced
    'pool_pre_ping': True,    # Ping on checkout
}


# =============================================================================
# ENGINE AND SESSION FACTORY
# =============================================================================

_engine = None
_session_factory = None
_scoped_session = None


def configure_engine(database_url: str, password: Optional[str] = None, pool_timeout: int = 30):
    """
    Create the engine and session factories for this process.

    Replaces any previously configured engine (tests point this at SQLite).
    """
    global _engine, _session_factory, _scoped_session

    dispose_engine()

    url = normalize_database_url(database_url, password)

    if url.get_backend_name() == 'sqlite':
        # Pool hands connections across worker threads
        options = {'connect_args': {'check_same_thread': False}}
    else:
        options = dict(POOL_CONFIG, pool_timeout=pool_timeout)

    _engine = create_engine(url, **options)

    # DEBUG_DB=1 traces pool activity
    if os.environ.get('DEBUG_DB'):
        @event.listens_for(_engine, 'connect')
        def on_connect(dbapi_conn, connection_record):
            print("[DB] New connection established")

        @event.listens_for(_engine, 'checkout')
        def on_checkout(dbapi_conn, connection_record, connection_proxy):
            print("[DB] Connection checked out from pool")

    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    _scoped_session = scoped_session(_session_factory)

    print(f"[DB] Engine configured for {url.get_backend_name()}")
    return _engine


def dispose_engine():
    """Close pooled connections and forget the engine."""
    global _engine, _session_factory, _scoped_session

    if _scoped_session is not None:
        _scoped_session.remove()
    if _engine is not None:
        _engine.dispose()

    _engine = None
    _session_factory = None
    _scoped_session = None


def get_engine():
    """Get the configured SQLAlchemy engine."""
    if _engine is None:
        raise RuntimeError("Database engine not configured; call configure_engine() first")
    return _engine


def get_scoped_session():
    """The thread-local session registry; removed on request teardown."""
    if _scoped_session is None:
        raise RuntimeError("Database engine not configured; call configure_engine() first")
    return _scoped_session


# =============================================================================
# PUBLIC API
# =============================================================================

def get_db() -> Session:
    """Get a database session for the current request/thread."""
    return get_scoped_session()()


def remove_session():
    """Discard the current thread's session."""
    if _scoped_session is not None:
        _scoped_session.remove()


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """
    Context manager for a standalone session with automatic cleanup.

    Usage:
        with db_session() as db:
            record = ensure_record(db, user_id)
    """
    if _session_factory is None:
        raise RuntimeError("Database engine not configured; call configure_engine() first")

    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(app=None):
    """
    Create tables (idempotent) and register per-request session cleanup.
    """
    from billing_relay.models import Base

    Base.metadata.create_all(get_engine())

    if app is not None:
        @app.teardown_appcontext
        def shutdown_session(exception=None):
            """Clean up scoped session after each request."""
            remove_session()

        print("[DB] Database initialized for Flask app")


# =============================================================================
# HEALTH CHECK
# =============================================================================

def check_connection() -> bool:
    """Check if the database is reachable."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        print(f"[DB] Health check failed: {e}")
        return False
