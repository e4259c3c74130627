"""Table-style access to the dispatch datastore.

The managed datastore is Supabase. ``InMemoryStore`` stands in when no Supabase
project is configured (local runs, tests) and keeps the same table semantics.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any, Optional

from supabase import Client

from ..db.supabase import get_supabase_client
from ..models.domain import parse_datetime

logger = logging.getLogger(__name__)


class DispatchStore:
    """Minimal table operations the services rely on."""

    def insert(self, table: str, row: dict) -> dict:
        raise NotImplementedError

    def upsert(self, table: str, row: dict, *, key: str = "id") -> dict:
        raise NotImplementedError

    def update(self, table: str, row_id: Any, changes: dict, *, key: str = "id") -> Optional[dict]:
        raise NotImplementedError

    def get(self, table: str, row_id: Any, *, key: str = "id") -> Optional[dict]:
        raise NotImplementedError

    def select(self, table: str, **filters: Any) -> list[dict]:
        raise NotImplementedError

    def select_between(
        self,
        table: str,
        column: str,
        start: datetime,
        end: datetime,
        **filters: Any,
    ) -> list[dict]:
        raise NotImplementedError

    def delete(self, table: str, row_id: Any, *, key: str = "id") -> bool:
        raise NotImplementedError


class InMemoryStore(DispatchStore):
    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()

    def _table(self, table: str) -> dict[str, dict]:
        return self._tables.setdefault(table, {})

    def insert(self, table: str, row: dict) -> dict:
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        with self._lock:
            rows = self._table(table)
            if str(stored["id"]) in rows:
                raise ValueError(f"Duplicate id '{stored['id']}' in table '{table}'.")
            rows[str(stored["id"])] = stored
        return copy.deepcopy(stored)

    def upsert(self, table: str, row: dict, *, key: str = "id") -> dict:
        stored = copy.deepcopy(row)
        if key == "id":
            stored.setdefault("id", str(uuid.uuid4()))
        with self._lock:
            rows = self._table(table)
            existing_id = self._find_id(rows, key, stored.get(key))
            if existing_id is not None:
                rows[existing_id].update(stored)
                return copy.deepcopy(rows[existing_id])
            stored.setdefault("id", str(uuid.uuid4()))
            rows[str(stored["id"])] = stored
        return copy.deepcopy(stored)

    def update(self, table: str, row_id: Any, changes: dict, *, key: str = "id") -> Optional[dict]:
        with self._lock:
            rows = self._table(table)
            existing_id = self._find_id(rows, key, row_id)
            if existing_id is None:
                return None
            rows[existing_id].update(copy.deepcopy(changes))
            return copy.deepcopy(rows[existing_id])

    def get(self, table: str, row_id: Any, *, key: str = "id") -> Optional[dict]:
        with self._lock:
            rows = self._table(table)
            existing_id = self._find_id(rows, key, row_id)
            return copy.deepcopy(rows[existing_id]) if existing_id is not None else None

    def select(self, table: str, **filters: Any) -> list[dict]:
        with self._lock:
            rows = list(self._table(table).values())
            return [copy.deepcopy(row) for row in rows if _matches(row, filters)]

    def select_between(self, table, column, start, end, **filters):
        selected = []
        for row in self.select(table, **filters):
            stamp = parse_datetime(row.get(column))
            if stamp is not None and start <= stamp <= end:
                selected.append(row)
        return selected

    def delete(self, table: str, row_id: Any, *, key: str = "id") -> bool:
        with self._lock:
            rows = self._table(table)
            existing_id = self._find_id(rows, key, row_id)
            if existing_id is None:
                return False
            del rows[existing_id]
            return True

    @staticmethod
    def _find_id(rows: dict[str, dict], key: str, value: Any) -> Optional[str]:
        if value is None:
            return None
        if key == "id":
            return str(value) if str(value) in rows else None
        for row_id, row in rows.items():
            if row.get(key) == value:
                return row_id
        return None


def _matches(row: dict, filters: dict) -> bool:
    for column, expected in filters.items():
        if isinstance(expected, (list, tuple, set, frozenset)):
            if row.get(column) not in expected:
                return False
        elif row.get(column) != expected:
            return False
    return True


class SupabaseStore(DispatchStore):
    def __init__(self, client: Client) -> None:
        self.client = client

    def _filtered(self, query, filters: dict):
        for column, expected in filters.items():
            if isinstance(expected, (list, tuple, set, frozenset)):
                query = query.in_(column, list(expected))
            else:
                query = query.eq(column, expected)
        return query

    def insert(self, table: str, row: dict) -> dict:
        result = self.client.table(table).insert(row).execute()
        return result.data[0] if result.data else row

    def upsert(self, table: str, row: dict, *, key: str = "id") -> dict:
        result = self.client.table(table).upsert(row, on_conflict=key).execute()
        return result.data[0] if result.data else row

    def update(self, table: str, row_id: Any, changes: dict, *, key: str = "id") -> Optional[dict]:
        result = self.client.table(table).update(changes).eq(key, row_id).execute()
        return result.data[0] if result.data else None

    def get(self, table: str, row_id: Any, *, key: str = "id") -> Optional[dict]:
        result = self.client.table(table).select("*").eq(key, row_id).limit(1).execute()
        return result.data[0] if result.data else None

    def select(self, table: str, **filters: Any) -> list[dict]:
        query = self._filtered(self.client.table(table).select("*"), filters)
        return list(query.execute().data or [])

    def select_between(self, table, column, start, end, **filters):
        query = self.client.table(table).select("*").gte(column, start.isoformat()).lte(column, end.isoformat())
        query = self._filtered(query, filters)
        return list(query.execute().data or [])

    def delete(self, table: str, row_id: Any, *, key: str = "id") -> bool:
        result = self.client.table(table).delete().eq(key, row_id).execute()
        return bool(result.data)


@lru_cache()
def get_store() -> DispatchStore:
    client = get_supabase_client()
    if client is None:
        logger.info("Supabase not configured; using in-memory dispatch store")
        return InMemoryStore()
    return SupabaseStore(client)
