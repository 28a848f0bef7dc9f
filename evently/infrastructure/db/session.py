# evently/infrastructure/db/session.py

import logging
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


# -----------------------------
# Base Class for Models
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Engine
# -----------------------------
def create_db_engine(database_url: str) -> Engine:
    """
    One engine per service. Services never share an engine even when
    their URLs point at the same server.
    """
    options = {
        "echo": False,
        "future": True,
        "pool_pre_ping": True,
    }
    if database_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory databases live and die with a single connection.
            options["poolclass"] = StaticPool
    return create_engine(database_url, **options)


# -----------------------------
# Session Factory
# -----------------------------
def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


# -----------------------------
# Context Manager (Non-FastAPI usage)
# -----------------------------
@contextmanager
def session_scope(session_factory: sessionmaker):
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def wait_for_db(engine: Engine, max_retries: int = 30, retry_delay_seconds: float = 1.5) -> None:
    # Handles the common case where a service starts before Postgres is ready.
    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable. url=%s", engine.url.render_as_string(hide_password=True))
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)
