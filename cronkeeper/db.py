from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Union

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

MEMORY_URL = "sqlite://"

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


class CronJob(Base):
    __tablename__ = "cronjobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    schedule = Column(String(255), nullable=False)
    command = Column(Text, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class CronJobExecution(Base):
    __tablename__ = "cronjob_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cronjob_id = Column(
        Integer,
        ForeignKey("cronjobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(20), nullable=False)
    output = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)


def database_url(value: Union[str, Path]) -> str:
    """Accept a SQLAlchemy URL as-is; turn a filesystem path into a SQLite URL."""
    raw = str(value)
    if "://" in raw:
        return raw
    if raw == ":memory:":
        return MEMORY_URL
    return f"sqlite:///{raw}"


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str) -> Engine:
    kwargs: Dict[str, Any] = {"future": True, "echo": False}
    if url.startswith("sqlite:"):
        # Firings record from their own threads.
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in (MEMORY_URL, "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine
