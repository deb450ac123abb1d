"""Database session. SQLite for development, PostgreSQL in production.

Every statement runs under STORE_TIMEOUT_SECONDS so a stuck store call
fails (and can be retried) instead of hanging the request.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings

timeout = settings.STORE_TIMEOUT_SECONDS

if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite: Use NullPool for thread-safety, busy timeout as the deadline
    from sqlalchemy.pool import NullPool
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": timeout},
        poolclass=NullPool
    )
else:
    # PostgreSQL: statement_timeout is in milliseconds
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"options": f"-c statement_timeout={int(timeout * 1000)}"},
        pool_size=5,  # Number of persistent connections
        max_overflow=10,  # Max temporary connections
        pool_timeout=timeout,  # Seconds to wait for connection
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True  # Verify connection health
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
