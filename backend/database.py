"""
Database configuration for the Stalo backend.

One engine per process, configured from the environment.
"""

import os
import threading
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool
from typing import Generator, Optional

SQLALCHEMY_DATABASE_URL = os.getenv(
    "SQLALCHEMY_DATABASE_URL",
    "sqlite:///./stalo.db"
)

if SQLALCHEMY_DATABASE_URL.startswith("postgres://"):
    SQLALCHEMY_DATABASE_URL = SQLALCHEMY_DATABASE_URL.replace("postgres://", "postgresql://", 1)

# Reconciliation deadline in seconds; unset means no timeout
_timeout = os.getenv("RECONCILE_TIMEOUT_SECONDS")
RECONCILE_TIMEOUT_SECONDS: Optional[float] = float(_timeout) if _timeout else None

# Serializes reconciliation runs with allocation writes. The process lock
# covers SQLite; on PostgreSQL the same key is taken as a transaction-scoped
# advisory lock so other processes are covered too.
ALLOCATION_LOCK_KEY = 5_310_427_001
allocation_lock = threading.Lock()

is_sqlite = SQLALCHEMY_DATABASE_URL.startswith("sqlite")

if is_sqlite:
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        pool_pre_ping=True,
    )
else:
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session; rolled back if the handler raises."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """Create tables and allocation indexes. Called on application startup."""
    import models
    models.Base.metadata.create_all(bind=engine)

    from migrations.add_allocation_indexes import add_allocation_indexes
    add_allocation_indexes(engine)
