"""Database session factory and initialization."""

import os
from pathlib import Path

from sqlmodel import SQLModel, create_engine, Session

# Get database URL from environment, default to local SQLite
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tradeledger.db")


def make_engine(database_url: str = DATABASE_URL):
    """Create an engine, making sure a local SQLite file has a directory to live in."""
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        db_path = database_url.replace("sqlite:///", "")
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if "sqlite" in database_url else {},
        echo=False,
    )


engine = make_engine()


def create_db_and_tables(bind=None):
    """Create all tables if they don't exist."""
    # Register table metadata
    import tradeledger.db.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)


def get_session(bind=None) -> Session:
    """Get a new database session."""
    return Session(bind or engine)


def init_db(bind=None):
    """Initialize database on startup."""
    create_db_and_tables(bind)
