"""
Repository pattern for data access.

Handles the SQLite schema and the append-only ledger of shared data points.
"""

import json
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import DataCategory, SharedDataPoint

_SELECT_COLUMNS = "id, category, payload, created_at, transmitted_at"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the key-value and shared data tables if they don't exist.

    The shared_data_point table is an append-only ledger: rows are never
    deleted, and the only permitted update sets transmitted_at once.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS key_value (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS shared_data_point (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                category TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                transmitted_at TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_data_point(row) -> SharedDataPoint:
    return SharedDataPoint(
        id=row[0],
        category=DataCategory(row[1]),
        payload=json.loads(row[2]),
        created_at=datetime.fromisoformat(row[3]),
        transmitted_at=datetime.fromisoformat(row[4]) if row[4] else None,
    )


class SharedDataRepository:
    """Repository for the ledger of data points handed to the sharer.

    Every point the user agreed to share is recorded here before any
    transmission is attempted, so the ledger doubles as the retry queue
    and as the source of the on-device export.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert_data_point(self, data_point: SharedDataPoint) -> SharedDataPoint:
        """Append a data point to the ledger.

        Args:
            data_point: Point to record (its id is ignored)

        Returns:
            The stored point, carrying its assigned id
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO shared_data_point
                (category, payload, created_at, transmitted_at)
                VALUES (?, ?, ?, ?)
            """, (
                data_point.category.value,
                json.dumps(data_point.payload, sort_keys=True),
                data_point.created_at.isoformat(),
                data_point.transmitted_at.isoformat() if data_point.transmitted_at else None,
            ))
            conn.commit()
            return SharedDataPoint(
                id=cursor.lastrowid,
                category=data_point.category,
                payload=data_point.payload,
                created_at=data_point.created_at,
                transmitted_at=data_point.transmitted_at,
            )
        finally:
            conn.close()

    def fetch_data_points(
        self,
        category: Optional[DataCategory] = None,
        pending_only: bool = False,
        limit: Optional[int] = None
    ) -> List[SharedDataPoint]:
        """Fetch ledger rows in submission order (oldest first).

        Args:
            category: Optional filter for a single category
            pending_only: Only return rows not yet transmitted
            limit: Maximum number of rows to return

        Returns:
            List of data points ordered by id
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_SELECT_COLUMNS} FROM shared_data_point"
            params = []
            conditions = []

            if category is not None:
                conditions.append("category = ?")
                params.append(category.value)
            if pending_only:
                conditions.append("transmitted_at IS NULL")

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY id ASC"
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)

            cursor = conn.execute(query, params)
            return [_row_to_data_point(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def fetch_next_pending(self, category: DataCategory) -> Optional[SharedDataPoint]:
        """Return the oldest untransmitted point of a category, if any."""
        points = self.fetch_data_points(category=category, pending_only=True, limit=1)
        return points[0] if points else None

    def mark_transmitted(self, data_point_id: int, transmitted_at: Optional[datetime] = None) -> None:
        """Record that a point reached the sink.

        Only rows that are still pending are touched, so a repeated call
        keeps the first transmission timestamp.
        """
        transmitted_at = transmitted_at or datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE shared_data_point
                SET transmitted_at = ?
                WHERE id = ? AND transmitted_at IS NULL
            """, (transmitted_at.isoformat(), data_point_id))
            conn.commit()
        finally:
            conn.close()

    def count_by_status(self) -> Dict[str, int]:
        """Count ledger rows by transmission status."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN transmitted_at IS NULL THEN 1 ELSE 0 END) as pending
                FROM shared_data_point
            """)
            row = cursor.fetchone()
            total = row[0] or 0
            pending = row[1] or 0
            return {
                "total": total,
                "pending": pending,
                "transmitted": total - pending,
            }
        finally:
            conn.close()
