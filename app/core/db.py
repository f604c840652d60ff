from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
import os

# Mandatory PostgreSQL Connection
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "").strip()

# Special case for local testing/CI
IS_TEST = os.getenv("PYTEST_CURRENT_TEST") is not None or os.getenv("ENVIRONMENT") == "testing"

if (not SQLALCHEMY_DATABASE_URL or not SQLALCHEMY_DATABASE_URL.startswith("postgresql")) and not IS_TEST:
    # Balance compare-and-set and row locks rely on PostgreSQL semantics.
    raise RuntimeError(
        "CRITICAL: DATABASE_URL must be a valid PostgreSQL connection string. "
        "SQLite is only supported in the test environment."
    )

if IS_TEST and not SQLALCHEMY_DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test_billing.db"


def make_engine(url: str):
    """Create an engine with pooling for PostgreSQL, or a thread-shareable SQLite engine."""
    if url.startswith("postgresql"):
        return create_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    # SQLite for testing
    return create_engine(url, connect_args={"check_same_thread": False})


engine = make_engine(SQLALCHEMY_DATABASE_URL)

# SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def supports_row_locks(session) -> bool:
    """SELECT ... FOR UPDATE is only meaningful on PostgreSQL."""
    return session.get_bind().dialect.name == "postgresql"


def run_migrations():
    """Bootstrap the database schema. In production, use Alembic instead."""
    # Import models so their tables are registered on Base.metadata
    import app.core.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
