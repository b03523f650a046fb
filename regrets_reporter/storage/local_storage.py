"""
Key-value storage backends.

The host storage area maps string keys to JSON values. Reads return only
the keys that are present; writes replace whole values.
"""

import asyncio
import copy
import json
from typing import Any, Dict, Iterable, Optional, Protocol, Union

from .db import DEFAULT_DB_PATH, get_connection
from .repository import initialize_schema

Keys = Optional[Union[str, Iterable[str]]]


class LocalStorage(Protocol):
    """Async key-value storage area."""

    async def get(self, keys: Keys = None) -> Dict[str, Any]:
        ...

    async def set(self, items: Dict[str, Any]) -> None:
        ...


def _normalize_keys(keys: Keys) -> Optional[list]:
    if keys is None:
        return None
    if isinstance(keys, str):
        return [keys]
    return list(keys)


class InMemoryLocalStorage:
    """Storage area held in a dict. Values are copied in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._items: Dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, keys: Keys = None) -> Dict[str, Any]:
        wanted = _normalize_keys(keys)
        if wanted is None:
            return copy.deepcopy(self._items)
        return {k: copy.deepcopy(self._items[k]) for k in wanted if k in self._items}

    async def set(self, items: Dict[str, Any]) -> None:
        for key, value in items.items():
            self._items[key] = copy.deepcopy(value)


class SqliteLocalStorage:
    """Storage area persisted in the key_value table.

    Values are stored as JSON text, so anything that isn't JSON
    serializable is rejected at write time.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    async def get(self, keys: Keys = None) -> Dict[str, Any]:
        return await asyncio.to_thread(self._get, _normalize_keys(keys))

    async def set(self, items: Dict[str, Any]) -> None:
        if not items:
            return
        rows = [(key, json.dumps(value)) for key, value in items.items()]
        await asyncio.to_thread(self._set, rows)

    def _get(self, wanted: Optional[list]) -> Dict[str, Any]:
        if wanted is not None and not wanted:
            return {}
        conn = get_connection(self.db_path)
        try:
            if wanted is None:
                cursor = conn.execute("SELECT key, value FROM key_value")
            else:
                placeholders = ", ".join("?" for _ in wanted)
                cursor = conn.execute(
                    f"SELECT key, value FROM key_value WHERE key IN ({placeholders})",
                    wanted,
                )
            return {key: json.loads(value) for key, value in cursor.fetchall()}
        finally:
            conn.close()

    def _set(self, rows: list) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany("""
                INSERT INTO key_value (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """, rows)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
