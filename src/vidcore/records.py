"""Record store interface and a local SQLite implementation.

The hosted deployment talks to a managed relational store; the core only
needs single-row CRUD by key or equality filter, plus an update guarded by the
row's current values, with no multi-statement transactions. The SQLite store
implements the same contract for local runs and tests.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlite_utils.db import NotFoundError

from .sqlite_db import ThreadLocalDatabase

COLLECTIONS = ("videos", "thumbnails", "share_links", "otps")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordStore(ABC):
    """Typed CRUD against named collections."""

    @abstractmethod
    def insert(self, collection: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it (with generated `id`)."""

    @abstractmethod
    def update(
        self,
        collection: str,
        key: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Update the row with primary key `key`. Returns rows changed (0 or 1).

        With `expected`, the row only changes if its columns still hold those
        values, checked and written as one statement.
        """

    @abstractmethod
    def select(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Rows whose columns equal every value in `filter`."""

    @abstractmethod
    def delete(self, collection: str, filter: Dict[str, Any]) -> int:
        """Delete rows matching `filter`. Returns rows deleted."""


def _check_collection(collection: str) -> str:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")
    return collection


def _where(filter: Optional[Dict[str, Any]]):
    if not filter:
        return None, []
    clauses = []
    for column in filter:
        if not column.isidentifier():
            raise ValueError(f"Invalid column name: {column!r}")
        clauses.append(f"[{column}] = ?")
    return " AND ".join(clauses), list(filter.values())


def _assignments(fields: Dict[str, Any]):
    for column in fields:
        if not column.isidentifier():
            raise ValueError(f"Invalid column name: {column!r}")
    return ", ".join(f"[{column}] = ?" for column in fields), list(fields.values())


class SQLiteRecordStore(RecordStore):
    """RecordStore on a SQLite file via sqlite-utils."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        self._databases = ThreadLocalDatabase(self.db_path)
        self._create_schema()

    @classmethod
    def from_config(cls, records_config) -> "SQLiteRecordStore":
        return cls(records_config.db_path)

    @property
    def db(self):
        return self._databases.get()

    def close(self) -> None:
        self._databases.close()

    def _create_schema(self) -> None:
        self.db["videos"].create(
            {
                "id": str,
                "user_id": str,
                "title": str,
                "filename": str,
                "storage_key": str,
                "size": int,
                "duration": float,
                "status": str,
                "created_at": str,
                "updated_at": str,
            },
            pk="id",
            not_null={"user_id", "storage_key", "status"},
            if_not_exists=True,
        )
        self.db["videos"].create_index(["user_id"], if_not_exists=True)

        self.db["thumbnails"].create(
            {
                "id": str,
                "video_id": str,
                "storage_key": str,
                "timestamp_offset_seconds": int,
                "position": int,
                "created_at": str,
            },
            pk="id",
            not_null={"video_id", "storage_key"},
            if_not_exists=True,
        )
        self.db["thumbnails"].create_index(["video_id"], if_not_exists=True)

    def insert(self, collection: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        table = self.db[_check_collection(collection)]
        row = {"id": str(uuid.uuid4()), "created_at": utc_now(), **fields}
        table.insert(row, pk="id", alter=True)
        return row

    def update(
        self,
        collection: str,
        key: str,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> int:
        table = self.db[_check_collection(collection)]
        if not expected:
            try:
                table.update(key, fields, alter=True)
            except NotFoundError:
                return 0
            return 1

        assignments, values = _assignments(fields)
        where, args = _where({"id": key, **expected})
        with self.db.conn:
            cursor = self.db.execute(
                f"UPDATE [{table.name}] SET {assignments} WHERE {where}", values + args
            )
        return cursor.rowcount

    def select(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        table = self.db[_check_collection(collection)]
        if not table.exists():
            return []
        where, args = _where(filter)
        return list(table.rows_where(where, args, order_by="rowid"))

    def delete(self, collection: str, filter: Dict[str, Any]) -> int:
        if not filter:
            raise ValueError("Refusing to delete without a filter")
        table = self.db[_check_collection(collection)]
        if not table.exists():
            return 0
        where, args = _where(filter)
        with self.db.conn:
            cursor = self.db.execute(f"DELETE FROM [{table.name}] WHERE {where}", args)
        return cursor.rowcount
