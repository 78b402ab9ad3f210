"""Database engine and request-scoped sessions"""
import logging
from typing import Any, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from settlement.core.config import settings
from settlement.models.base import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine suited to the backend named in the URL.

    Webhook processing runs in the request threadpool, so a SQLite
    connection may be used off the thread that opened it and waits on a
    locked database instead of failing. PostgreSQL connections are pinged
    before use and recycled hourly.
    """
    url = make_url(database_url)
    options: Dict[str, Any] = {}
    if url.get_backend_name() == "sqlite":
        options["connect_args"] = {
            "check_same_thread": False,
            "timeout": settings.DB_SQLITE_BUSY_TIMEOUT_SECONDS,
        }
    else:
        options.update(
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return create_engine(url, **options)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Iterator[Session]:
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables"""
    Base.metadata.create_all(bind=engine)
    logger.info(f"Schema ready on {engine.url.get_backend_name()} ({len(Base.metadata.tables)} tables)")


def close_db():
    """Release pooled connections on shutdown"""
    engine.dispose()
