"""Database engine and session factory.

WHAT:
    Builds the SQLAlchemy engine and session factory from settings and exposes
    a FastAPI dependency for request-scoped sessions.

WHY:
    - No module-level engine: the application factory builds one per app and
      stores the session factory on `app.state`, so tests can run against an
      in-memory SQLite store without touching process globals.
    - The reconciliation worker opens its own sessions from the same factory.

ARCHITECTURE:
    ┌──────────────────┐
    │  build_engine()  │  postgresql (psycopg2) / sqlite (tests)
    └────────┬─────────┘
             │
    ┌────────▼──────────────────┐
    │  build_session_factory()  │ ──► app.state.session_factory
    └────────┬──────────────────┘
             │
    ┌────────▼─────────┐     ┌──────────────────────────┐
    │  get_db()        │     │  session_scope(factory)  │
    │  (request dep)   │     │  (workers)               │
    └──────────────────┘     └──────────────────────────┘

USAGE:
    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        return db.query(Item).all()
"""

from contextlib import contextmanager
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Base is defined in shopsync.models to ensure a single registry across the app
from .models import Base


# =============================================================================
# ENGINE
# =============================================================================

def build_engine(database_url: str) -> Engine:
    """Create the engine for `database_url`.

    Connection pool configuration for production:
    - pool_size / max_overflow: 10 persistent, up to 30 under load
    - pool_recycle: recreate connections after 1 hour
    - pool_pre_ping: validate connections before use

    SQLite engines (tests/dev) do not support pool_size/max_overflow.
    """
    if database_url.startswith("postgres://"):
        # Heroku-style URL
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def create_tables(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


def ping(db: Session) -> bool:
    """Return True when the store answers `SELECT 1`."""
    db.execute(text("SELECT 1"))
    return True


# =============================================================================
# SESSIONS
# =============================================================================

def get_db(request: Request) -> Generator[Session, None, None]:
    """Yield a session from the app's session factory for one request.

    Yields:
        SQLAlchemy Session instance, closed after the response is sent
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for sessions outside of FastAPI (workers, scripts).

    Rolls back on error; callers commit explicitly.
    """
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
