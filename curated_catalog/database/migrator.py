from __future__ import annotations

"""Numbered SQL migrations for the catalog store.

Files in ``migrations/`` are named ``NNN_description.sql``. Each pending file
is applied in version order and recorded in ``schema_version``.
"""

import re
import logging
import sqlite3
from pathlib import Path

from .connection import strip_pragmas

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_MIGRATION_NAME_RE = re.compile(r"^(\d+)_(\w+)\.sql$")


def current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) AS v FROM schema_version").fetchone()
    return row["v"] or 0


def pending_migrations(current: int, directory: Path = MIGRATIONS_DIR) -> list[tuple[int, str, Path]]:
    """(version, description, path) for every migration newer than ``current``."""
    pending = []
    for path in directory.glob("*.sql"):
        match = _MIGRATION_NAME_RE.match(path.name)
        if not match:
            logger.warning(f"Ignoring migration with unexpected name: {path.name}")
            continue
        version = int(match.group(1))
        if version > current:
            pending.append((version, match.group(2), path))
    return sorted(pending)


def run_migrations(conn: sqlite3.Connection, directory: Path = MIGRATIONS_DIR) -> int:
    """Apply pending migrations and return the resulting schema version."""
    conn.execute(
        """CREATE TABLE IF NOT EXISTS schema_version (
               version     INTEGER PRIMARY KEY,
               description TEXT NOT NULL,
               applied_at  TEXT NOT NULL DEFAULT (datetime('now'))
           )"""
    )
    conn.commit()

    version = current_version(conn)
    if not directory.exists():
        return version

    for number, description, path in pending_migrations(version, directory):
        logger.info(f"Applying migration {number}: {description}")
        conn.executescript(strip_pragmas(path.read_text()))
        conn.execute(
            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
            (number, description),
        )
        conn.commit()
        version = number
    return version
