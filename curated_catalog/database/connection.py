import sqlite3
import logging
from pathlib import Path

from ..errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Seconds a connection waits on a lock held by the refresh thread
BUSY_TIMEOUT = 30


def strip_pragmas(sql: str) -> str:
    """Drop PRAGMA lines from a script; they are set per connection instead."""
    return "\n".join(
        line for line in sql.splitlines() if not line.strip().upper().startswith("PRAGMA")
    )


def get_connection(db_path: str, timeout: float = BUSY_TIMEOUT) -> sqlite3.Connection:
    """Open the catalog store with WAL journaling and foreign keys enforced."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def init_database(db_path: str) -> sqlite3.Connection:
    """Open the store and bring its schema up to the latest migration."""
    from .migrator import run_migrations

    conn = get_connection(db_path)
    try:
        conn.executescript(strip_pragmas(SCHEMA_PATH.read_text()))
        version = run_migrations(conn)
    except sqlite3.Error as e:
        conn.close()
        raise StoreError(f"Could not initialize catalog store at {db_path}: {e}") from e

    logger.debug(f"Catalog store at {db_path} is at schema version {version}")
    return conn
