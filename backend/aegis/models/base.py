import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from ..core.config import settings


def _connect_args(url: str) -> dict:
    # SQLite connections are shared between the event loop and worker threads
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(settings.LOCAL_DATABASE_URL, connect_args=_connect_args(settings.LOCAL_DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite DateTime columns drop tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_uuid() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
