"""SQLite engine policy and timestamp conversion shared by repositories."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Store datetimes as naive UTC; SQLite has no timezone column type."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for one study database file.

    Pragmas are applied on every new DBAPI connection. Connections are not pooled, so concurrent
    worker processes only contend on SQLite's own file locks.
    """

    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _apply_pragmas(dbapi_connection, busy_timeout_ms=max(1, busy_timeout_ms))

    return engine


def _apply_pragmas(connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = connection.cursor()
    try:
        for statement in (
            "PRAGMA journal_mode = WAL",
            f"PRAGMA busy_timeout = {busy_timeout_ms}",
            "PRAGMA foreign_keys = ON",
        ):
            cursor.execute(statement)
    finally:
        cursor.close()
