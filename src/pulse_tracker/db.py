"""SQLite schema and connection helpers."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from .models import ActivityRecord, ProjectSource

DEFAULT_COLOR = "#6366f1"

MEMORY_PATH = ":memory:"

PathLike = Union[str, Path]


def open_database(path: PathLike, *, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    if str(path) != MEMORY_PATH:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(path),
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    conn.execute("PRAGMA journal_mode = WAL;")
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: PathLike, *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def reader_connection(path: PathLike) -> Iterator[sqlite3.Connection]:
    """Open a short-lived read-only connection to an existing database file."""
    uri = Path(path).resolve().as_uri() + "?mode=ro"
    conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run several statements atomically on an autocommit connection."""
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK;")
        raise
    else:
        conn.execute("COMMIT;")


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        f"""
        CREATE TABLE IF NOT EXISTS brands (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            color TEXT NOT NULL DEFAULT '{DEFAULT_COLOR}',
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            brand_id INTEGER NOT NULL REFERENCES brands(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT '{DEFAULT_COLOR}',
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at REAL NOT NULL,
            UNIQUE (brand_id, name)
        );

        CREATE TABLE IF NOT EXISTS project_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            rule_type TEXT NOT NULL,
            pattern TEXT NOT NULL,
            is_regex INTEGER NOT NULL DEFAULT 0,
            priority INTEGER NOT NULL DEFAULT 0,
            created_at REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp REAL NOT NULL,
            app_name TEXT NOT NULL,
            bundle_id TEXT NOT NULL,
            window_title TEXT NOT NULL,
            url TEXT,
            extra_info TEXT,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            date TEXT NOT NULL,
            project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
            project_source TEXT
        );

        CREATE TABLE IF NOT EXISTS dismissed_suggestions (
            token TEXT PRIMARY KEY,
            dismissed_at REAL NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_activities_date
            ON activities(date);
        CREATE INDEX IF NOT EXISTS idx_activities_app_name
            ON activities(app_name);
        CREATE INDEX IF NOT EXISTS idx_activities_project_id
            ON activities(project_id);
        CREATE INDEX IF NOT EXISTS idx_rules_project_id
            ON project_rules(project_id);
        """
    )


def to_epoch(value: datetime) -> float:
    return value.astimezone(timezone.utc).timestamp()


def from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc).astimezone()


def row_to_record(row: sqlite3.Row) -> ActivityRecord:
    source: Optional[ProjectSource] = None
    if row["project_source"]:
        source = ProjectSource(row["project_source"])
    return ActivityRecord(
        id=row["id"],
        timestamp=from_epoch(row["timestamp"]),
        app_name=row["app_name"],
        bundle_id=row["bundle_id"],
        window_title=row["window_title"],
        url=row["url"],
        extra_info=row["extra_info"],
        duration_seconds=int(row["duration_seconds"]),
        date=row["date"],
        project_id=row["project_id"],
        project_source=source,
    )
