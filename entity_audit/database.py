"""Database configuration and session management for the history API."""
import os
from typing import Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///./entity_audit.db"


def normalize_url(url: str) -> str:
    # Render/Heroku use postgres:// but SQLAlchemy needs postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def make_engine(url: Optional[str] = None) -> Engine:
    """Engine for ``url``, or for DATABASE_URL when no url is given."""
    url = normalize_url(url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL))
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def make_session_factory(bind) -> sessionmaker:
    """Read-only sessions for the API, on the engine the audited sessions write to."""
    return sessionmaker(autoflush=False, bind=bind)


def get_db(request: Request):
    """Dependency for FastAPI endpoints to get database session."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
