# backend/valuation_engine/database.py
"""
Database connection and session management.

This module configures SQLAlchemy with:
- Connection pooling for production performance
- Environment-aware settings (test vs production)
- Health check capabilities

Recompute workers run on a thread pool and each job opens its own session
from SessionLocal, so the pool must be at least WORKER_POOL_SIZE wide.
On SQLite the job runner is synchronous instead (jobs run on the thread
that triggered them), since StaticPool sessions share one connection.

Pool Configuration (configurable via environment variables):
- DB_POOL_SIZE: Persistent connections (default: 5)
- DB_POOL_MAX_OVERFLOW: Burst capacity (default: 10)
- DB_POOL_RECYCLE: Connection lifetime (default: 3600s)
- DB_POOL_PRE_PING: Health checks (default: True)
"""

import logging
from collections.abc import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool

from .config import settings

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, debug: bool = False):
    """
    Create SQLAlchemy engine with environment-appropriate configuration.

    Configuration varies by database type:
    - In-memory SQLite: StaticPool, the only way to share one database
      between sessions (tests)
    - File SQLite: one connection per session, SQLite's file lock
      serializes writers
    - PostgreSQL: QueuePool sized for API requests plus recompute workers
    """
    url_lower = database_url.lower()
    if url_lower.startswith("sqlite://"):
        # check_same_thread=False lets request threads use pooled connections
        connect_args = {"check_same_thread": False}
        if is_memory_sqlite(database_url):
            logger.info("Configuring in-memory SQLite database")
            return create_engine(database_url, poolclass=StaticPool, connect_args=connect_args, echo=debug)
        logger.info("Configuring SQLite database")
        return create_engine(database_url, connect_args=connect_args, echo=debug)

    pool_size = max(settings.db_pool_size, settings.worker_pool_size)
    logger.info(
        f"Configuring PostgreSQL database pool: "
        f"size={pool_size}, "
        f"max_overflow={settings.db_pool_max_overflow}, "
        f"recycle={settings.db_pool_recycle}s, "
        f"pre_ping={settings.db_pool_pre_ping}"
    )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_timeout=30,
        echo=debug,
    )


def is_memory_sqlite(database_url: str) -> bool:
    url_lower = database_url.lower()
    return url_lower in ("sqlite://", "sqlite:///") or ":memory:" in url_lower or "mode=memory" in url_lower


engine = create_db_engine(settings.database_url, debug=settings.debug)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.

    Yields:
        Session: A SQLAlchemy database session that auto-closes after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_database_health() -> dict:
    """
    Check database connectivity and pool status.

    Returns:
        dict: Health status with connection info
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            conn.commit()

        if settings.is_sqlite:
            return {"status": "healthy", "database": "sqlite"}

        return {
            "status": "healthy",
            "database": "postgresql",
            "pool": {
                "pool_size": engine.pool.size(),
                "checked_in": engine.pool.checkedin(),
                "checked_out": engine.pool.checkedout(),
                "overflow": engine.pool.overflow(),
            },
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
        }
