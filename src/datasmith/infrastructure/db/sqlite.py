from __future__ import annotations

import sqlite3
from pathlib import Path

from datasmith.core.config import env_float, env_int

DEFAULT_SQLITE_CONNECT_TIMEOUT_SECONDS = 30.0
DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30_000
DEFAULT_SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def _sqlite_connect_timeout_seconds() -> float:
    return env_float(
        "DATASMITH_SQLITE_CONNECT_TIMEOUT_SECONDS",
        DEFAULT_SQLITE_CONNECT_TIMEOUT_SECONDS,
        minimum=0.1,
    )


def _sqlite_busy_timeout_ms() -> int:
    return env_int("DATASMITH_SQLITE_BUSY_TIMEOUT_MS", DEFAULT_SQLITE_BUSY_TIMEOUT_MS, minimum=1)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute(f"PRAGMA busy_timeout = {_sqlite_busy_timeout_ms()};")


def get_connection(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=_sqlite_connect_timeout_seconds())
    conn.row_factory = sqlite3.Row
    _configure_connection(conn)
    return conn


def initialize_schema(db_path: Path, schema_path: Path = DEFAULT_SCHEMA_PATH) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with get_connection(db_path) as conn:
        conn.executescript(schema_path.read_text(encoding="utf-8"))
        _apply_lightweight_migrations(conn)
        conn.commit()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row["name"] == column for row in rows)


def _apply_lightweight_migrations(conn: sqlite3.Connection) -> None:
    if not _column_exists(conn, "jobs", "input_digest"):
        conn.execute("ALTER TABLE jobs ADD COLUMN input_digest TEXT")
    if not _column_exists(conn, "jobs", "seed_json"):
        conn.execute("ALTER TABLE jobs ADD COLUMN seed_json TEXT")
    if not _column_exists(conn, "job_errors", "attempt"):
        conn.execute("ALTER TABLE job_errors ADD COLUMN attempt INTEGER NOT NULL DEFAULT 0")
