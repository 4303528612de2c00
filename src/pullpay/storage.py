"""Local storage hardening helpers."""

from __future__ import annotations

import os
import sqlite3
from pathlib import Path


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def connect_sqlite(db_path: Path) -> sqlite3.Connection:
    """Open a connection in autocommit mode; callers issue BEGIN IMMEDIATE."""
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_sqlite(db_path: Path, schema: list[str]) -> None:
    ensure_private_dir(db_path.parent)
    conn = connect_sqlite(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        for statement in schema:
            conn.execute(statement)
    finally:
        conn.close()
    ensure_private_file(db_path)
