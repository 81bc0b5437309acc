"""
Record store for pipeline entities.

RecordStore is the capability interface every stage and the dependency
checker depend on: read by id, read by parent, write, status transition,
soft delete and atomic versioned inserts. SQLiteStore implements it on
top of db_manager.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from novel_video_agent.db_manager import ENTITY_TABLES, get_db_connection, new_id, now_iso
from novel_video_agent.errors import InvalidTransitionError, NotFoundError


# Allowed source statuses for each target status, per entity.
# A transition not listed here raises InvalidTransitionError.
TRANSITIONS: Dict[str, Dict[str, tuple]] = {
    "resources": {
        "ready": ("pending",),
        "failed": ("pending",),
    },
    "novels": {
        "chaptered": ("created", "chaptered"),
    },
    "narrations": {
        "completed": ("pending",),
        "failed": ("pending",),
    },
    "audios": {
        "completed": ("pending",),
        "failed": ("pending",),
        "pending": ("failed",),
    },
    "subtitles": {
        "completed": ("pending",),
        "failed": ("pending",),
    },
    "images": {
        "completed": ("pending",),
        "failed": ("pending",),
    },
    "videos": {
        "processing": ("pending",),
        "completed": ("processing",),
        "failed": ("pending", "processing"),
    },
}


class RecordStore(ABC):
    """Capability interface over whichever storage engine backs the pipeline."""

    @abstractmethod
    def get(self, table: str, record_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        """Read one record by id."""

    def require(self, table: str, record_id: str) -> Dict[str, Any]:
        """Read one active record by id or raise NotFoundError."""
        record = self.get(table, record_id)
        if record is None:
            raise NotFoundError(f"{table} {record_id} not found")
        return record

    @abstractmethod
    def find(self, table: str, *, include_deleted: bool = False,
             order_by: Optional[str] = None, **filters: Any) -> List[Dict[str, Any]]:
        """Read records matching equality filters (usually a parent id)."""

    @abstractmethod
    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record, assigning id and timestamps."""

    @abstractmethod
    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Update non-status fields of an active record."""

    @abstractmethod
    def transition(self, table: str, record_id: str, target: str, **values: Any) -> Dict[str, Any]:
        """Atomically move a record to target status, updating extra fields."""

    @abstractmethod
    def tombstone(self, table: str, record_id: str) -> bool:
        """Soft-delete a record. Returns False if it was not active."""

    @abstractmethod
    def supersede(self, table: str, scope: Dict[str, Any], rows: List[Dict[str, Any]],
                  versioned: bool = False) -> List[Dict[str, Any]]:
        """Tombstone active records in scope and insert rows, in one transaction.

        With versioned=True every inserted row gets version = max(version in
        scope, tombstoned included) + 1.
        """

    @abstractmethod
    def insert_versioned(self, table: str, scope: Dict[str, Any],
                         rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert rows that share version = max(version in scope) + 1, atomically.

        Nothing in scope is tombstoned, so earlier versions stay readable.
        """

    @abstractmethod
    def upsert(self, table: str, key: Dict[str, Any], values: Dict[str, Any]) -> Dict[str, Any]:
        """Update the active record matching key, or insert one, atomically."""


def _check_table(table: str) -> None:
    if table not in ENTITY_TABLES:
        raise ValueError(f"Unknown table: {table}")


def _check_column(name: str) -> None:
    # Column names are interpolated into SQL, values never are
    if not name.replace("_", "").isalnum():
        raise ValueError(f"Invalid column name: {name}")


def _where(filters: Dict[str, Any], include_deleted: bool) -> tuple:
    clauses = []
    params: List[Any] = []
    for column, value in filters.items():
        _check_column(column)
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, (list, tuple, set)):
            values = list(value)
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        else:
            clauses.append(f"{column} = ?")
            params.append(value)
    if not include_deleted:
        clauses.append("lifecycle = 'active'")
    sql = " WHERE " + " AND ".join(clauses) if clauses else ""
    return sql, params


def _insert_row(cursor, table: str, values: Dict[str, Any], timestamp: str) -> str:
    row = dict(values)
    row.setdefault("id", new_id())
    row.setdefault("created_at", timestamp)
    row.setdefault("updated_at", timestamp)
    row.setdefault("lifecycle", "active")
    for column in row:
        _check_column(column)
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    cursor.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values()))
    return row["id"]


def _fetch(cursor, table: str, record_id: str) -> Dict[str, Any]:
    cursor.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,))
    return dict(cursor.fetchone())


class SQLiteStore(RecordStore):
    """RecordStore backed by a SQLite database file.

    Every call opens its own connection, so one store instance can be
    shared by the worker threads of a fan-out.

    Examples:
        >>> store = SQLiteStore("database/novel_video_alpha.db")
        >>> store.find("chapters", novel_id="abc", order_by="sequence")
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def get(self, table: str, record_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        _check_table(table)
        where, params = _where({"id": record_id}, include_deleted)
        with get_db_connection(self.db_path) as conn:
            row = conn.execute(f"SELECT * FROM {table}{where}", params).fetchone()
            return dict(row) if row else None

    def find(self, table: str, *, include_deleted: bool = False,
             order_by: Optional[str] = None, **filters: Any) -> List[Dict[str, Any]]:
        _check_table(table)
        where, params = _where(filters, include_deleted)
        order = ""
        if order_by:
            columns = [c.strip() for c in order_by.split(",")]
            for column in columns:
                name, *direction = column.split()
                _check_column(name)
                if direction and direction != ["ASC"] and direction != ["DESC"]:
                    raise ValueError(f"Invalid ordering: {column}")
            order = " ORDER BY " + ", ".join(columns)
        with get_db_connection(self.db_path) as conn:
            rows = conn.execute(f"SELECT * FROM {table}{where}{order}", params).fetchall()
            return [dict(row) for row in rows]

    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        _check_table(table)
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            record_id = _insert_row(cursor, table, values, now_iso())
            return _fetch(cursor, table, record_id)

    def insert_many(self, table: str, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert several records in one transaction."""
        _check_table(table)
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            timestamp = now_iso()
            ids = [_insert_row(cursor, table, row, timestamp) for row in rows]
            return [_fetch(cursor, table, record_id) for record_id in ids]

    def update(self, table: str, record_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        _check_table(table)
        if "status" in values:
            raise ValueError("Use transition() to change status")
        fields = dict(values)
        fields["updated_at"] = now_iso()
        for column in fields:
            _check_column(column)
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ? AND lifecycle = 'active'",
                [*fields.values(), record_id],
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"{table} {record_id} not found")
            return _fetch(cursor, table, record_id)

    def transition(self, table: str, record_id: str, target: str, **values: Any) -> Dict[str, Any]:
        _check_table(table)
        allowed = TRANSITIONS.get(table, {}).get(target)
        if not allowed:
            raise InvalidTransitionError(table, record_id, None, target)

        fields = dict(values)
        fields["status"] = target
        fields["updated_at"] = now_iso()
        for column in fields:
            _check_column(column)
        assignments = ", ".join(f"{column} = ?" for column in fields)
        placeholders = ", ".join("?" for _ in allowed)

        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            # Single-row compare-and-set on the current status
            cursor.execute(
                f"UPDATE {table} SET {assignments} "
                f"WHERE id = ? AND lifecycle = 'active' AND status IN ({placeholders})",
                [*fields.values(), record_id, *allowed],
            )
            if cursor.rowcount == 0:
                cursor.execute(f"SELECT status FROM {table} WHERE id = ? AND lifecycle = 'active'",
                               (record_id,))
                row = cursor.fetchone()
                if row is None:
                    raise NotFoundError(f"{table} {record_id} not found")
                raise InvalidTransitionError(table, record_id, row["status"], target)
            return _fetch(cursor, table, record_id)

    def tombstone(self, table: str, record_id: str) -> bool:
        _check_table(table)
        timestamp = now_iso()
        with get_db_connection(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE {table} SET lifecycle = 'tombstoned', deleted_at = ?, updated_at = ? "
                f"WHERE id = ? AND lifecycle = 'active'",
                (timestamp, timestamp, record_id),
            )
            return cursor.rowcount > 0

    def supersede(self, table: str, scope: Dict[str, Any], rows: List[Dict[str, Any]],
                  versioned: bool = False) -> List[Dict[str, Any]]:
        _check_table(table)
        timestamp = now_iso()
        with get_db_connection(self.db_path, immediate=True) as conn:
            cursor = conn.cursor()

            version = None
            if versioned:
                where, params = _where(scope, include_deleted=True)
                cursor.execute(f"SELECT COALESCE(MAX(version), 0) AS v FROM {table}{where}", params)
                version = cursor.fetchone()["v"] + 1

            where, params = _where(scope, include_deleted=False)
            cursor.execute(
                f"UPDATE {table} SET lifecycle = 'tombstoned', deleted_at = ?, updated_at = ?{where}",
                [timestamp, timestamp, *params],
            )

            ids = []
            for row in rows:
                values = {**scope, **row}
                if version is not None:
                    values["version"] = version
                ids.append(_insert_row(cursor, table, values, timestamp))
            return [_fetch(cursor, table, record_id) for record_id in ids]

    def insert_versioned(self, table: str, scope: Dict[str, Any],
                         rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        _check_table(table)
        timestamp = now_iso()
        with get_db_connection(self.db_path, immediate=True) as conn:
            cursor = conn.cursor()
            where, params = _where(scope, include_deleted=True)
            # Write lock is already held, so read-max then insert cannot race
            cursor.execute(f"SELECT COALESCE(MAX(version), 0) AS v FROM {table}{where}", params)
            version = cursor.fetchone()["v"] + 1
            ids = [_insert_row(cursor, table, {**scope, **row, "version": version}, timestamp)
                   for row in rows]
            return [_fetch(cursor, table, record_id) for record_id in ids]

    def upsert(self, table: str, key: Dict[str, Any], values: Dict[str, Any]) -> Dict[str, Any]:
        _check_table(table)
        timestamp = now_iso()
        with get_db_connection(self.db_path, immediate=True) as conn:
            cursor = conn.cursor()
            where, params = _where(key, include_deleted=False)
            cursor.execute(f"SELECT id FROM {table}{where}", params)
            row = cursor.fetchone()
            if row is None:
                record_id = _insert_row(cursor, table, {**key, **values}, timestamp)
                return _fetch(cursor, table, record_id)
            if values:
                fields = {**values, "updated_at": timestamp}
                for column in fields:
                    _check_column(column)
                assignments = ", ".join(f"{column} = ?" for column in fields)
                cursor.execute(f"UPDATE {table} SET {assignments} WHERE id = ?",
                               [*fields.values(), row["id"]])
            return _fetch(cursor, table, row["id"])
