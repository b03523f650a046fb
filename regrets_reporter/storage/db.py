"""
Database connection management.

Provides the SQLite connection backing both the key-value store and the
shared data ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "regrets_reporter.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    The parent directory is created on demand so a fresh profile directory
    can be used without a separate setup step.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
