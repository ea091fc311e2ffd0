"""SQLite storage for users, per-user settings and book requests."""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from requestarr.core.logger import setup_logger
from requestarr.core.requests_service import (
    DuplicateRequestError,
    normalize_acquisition_status,
    normalize_request_status,
    normalize_source,
    validate_status_transition,
)

logger = setup_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    username      TEXT UNIQUE NOT NULL,
    email         TEXT,
    display_name  TEXT,
    password_hash TEXT,
    role          TEXT NOT NULL DEFAULT 'user',
    created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS user_settings (
    user_id  INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    payload  TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS book_requests (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id             INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    book_id             TEXT NOT NULL,
    title               TEXT NOT NULL,
    author              TEXT NOT NULL,
    cover               TEXT,
    isbn                TEXT,
    source              TEXT,
    status              TEXT NOT NULL DEFAULT 'pending',
    acquisition_status  TEXT NOT NULL DEFAULT 'pending',
    acquisition_id      TEXT,
    acquisition_message TEXT,
    tags                TEXT NOT NULL DEFAULT '[]',
    admin_note          TEXT,
    reviewed_by         INTEGER REFERENCES users(id),
    reviewed_at         TIMESTAMP,
    created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_book_requests_user_status_created_at
ON book_requests (user_id, status, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_book_requests_status_acquisition
ON book_requests (status, acquisition_status);

CREATE INDEX IF NOT EXISTS idx_book_requests_user_book
ON book_requests (user_id, book_id);

CREATE INDEX IF NOT EXISTS idx_book_requests_acquisition_id
ON book_requests (acquisition_id);
"""

# Columns added after the first released schema: name -> column definition
_LATE_REQUEST_COLUMNS = {
    "tags": "TEXT NOT NULL DEFAULT '[]'",
    "acquisition_message": "TEXT",
    "admin_note": "TEXT",
}

_VALID_ROLES = ("user", "admin")
_USER_COLUMNS = frozenset({"email", "display_name", "password_hash", "role"})
_REQUEST_COLUMNS = frozenset({
    "status",
    "acquisition_status",
    "acquisition_id",
    "acquisition_message",
    "tags",
    "cover",
    "isbn",
    "admin_note",
    "reviewed_by",
    "reviewed_at",
})


def sync_builtin_admin_user(user_db: "UserDB", username: str, password_hash: str) -> None:
    """Create or promote the admin account described by ADMIN_USERNAME/ADMIN_PASSWORD."""
    username = (username or "").strip()
    if not username or not password_hash:
        return

    existing = user_db.get_user(username=username)
    if existing is None:
        user_db.create_user(username=username, password_hash=password_hash, role="admin")
        logger.info(f"Created admin user '{username}' from configured credentials")
        return

    wanted = {"password_hash": password_hash, "role": "admin"}
    changes = {column: value for column, value in wanted.items() if existing.get(column) != value}
    if changes:
        user_db.update_user(existing["id"], **changes)
        logger.info(f"Updated admin user '{username}' from configured credentials")


def _now_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _request_row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = dict(row)
    try:
        tags = json.loads(record.get("tags") or "[]")
    except (TypeError, ValueError):
        tags = []
    record["tags"] = tags if isinstance(tags, list) else []
    return record


class UserDB:
    """Thread-safe SQLite user and request database.

    Reads open their own connection; writes are serialized through a process-wide
    lock so read-check-write sequences such as :meth:`update_request` stay atomic.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._lock = threading.Lock()

    @contextmanager
    def _connection(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        if write:
            self._lock.acquire()
        try:
            conn = sqlite3.connect(self._db_path)
            conn.row_factory = sqlite3.Row
            try:
                conn.execute("PRAGMA foreign_keys = ON")
                yield conn
                if write:
                    conn.commit()
            finally:
                conn.close()
        finally:
            if write:
                self._lock.release()

    def initialize(self) -> None:
        """Create the schema and add any request columns missing from older databases."""
        with self._connection(write=True) as conn:
            conn.executescript(_SCHEMA)
            present = {row["name"] for row in conn.execute("PRAGMA table_info(book_requests)")}
            for column, definition in _LATE_REQUEST_COLUMNS.items():
                if column not in present:
                    logger.info(f"Adding missing book_requests column '{column}'")
                    conn.execute(f"ALTER TABLE book_requests ADD COLUMN {column} {definition}")
            conn.execute("UPDATE book_requests SET tags = '[]' WHERE tags IS NULL OR TRIM(tags) = ''")
        # journal_mode cannot change inside a transaction
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        password_hash: Optional[str] = None,
        role: str = "user",
    ) -> Dict[str, Any]:
        if role not in _VALID_ROLES:
            raise ValueError(f"Invalid role: {role}")
        with self._connection(write=True) as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO users (username, email, display_name, password_hash, role) VALUES (?, ?, ?, ?, ?)",
                    (username, email, display_name, password_hash, role),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"User '{username}' already exists") from e
            row = conn.execute("SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return dict(row)

    def get_user(
        self,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Look a user up by id, else by username. Returns None when neither matches."""
        if user_id is not None:
            query, param = "SELECT * FROM users WHERE id = ?", user_id
        elif username is not None:
            query, param = "SELECT * FROM users WHERE username = ?", username
        else:
            return None
        with self._connection() as conn:
            row = conn.execute(query, (param,)).fetchone()
        return dict(row) if row else None

    def update_user(self, user_id: int, **fields: Any) -> None:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"Invalid column: {', '.join(sorted(unknown))}")
        if "role" in fields and fields["role"] not in _VALID_ROLES:
            raise ValueError(f"Invalid role: {fields['role']}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self._connection(write=True) as conn:
            cursor = conn.execute(
                f"UPDATE users SET {assignments} WHERE id = ?",
                (*fields.values(), user_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"User {user_id} not found")

    def get_user_settings(self, user_id: int) -> Dict[str, Any]:
        """Per-user config overrides; empty when the user never saved any."""
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
        return json.loads(row["payload"]) if row else {}

    def set_user_settings(self, user_id: int, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``settings`` into the stored overrides. A ``None`` value removes the key."""
        with self._connection(write=True) as conn:
            row = conn.execute("SELECT payload FROM user_settings WHERE user_id = ?", (user_id,)).fetchone()
            merged = json.loads(row["payload"]) if row else {}
            merged.update(settings)
            merged = {key: value for key, value in merged.items() if value is not None}
            conn.execute(
                "INSERT INTO user_settings (user_id, payload) VALUES (?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET payload = excluded.payload",
                (user_id, json.dumps(merged)),
            )
        return merged

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_request(
        self,
        *,
        user_id: int,
        book_id: str,
        title: str,
        author: str,
        cover: Optional[str] = None,
        isbn: Optional[str] = None,
        source: Optional[str] = None,
        duplicate_scope: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert a pending request and return the stored row.

        ``duplicate_scope`` is ``"any"`` to reject the insert when the user has
        any request for ``book_id``, ``"pending"`` to only count pending ones,
        or None to skip the check. The check runs under the write lock, so
        concurrent inserts cannot both pass it.
        """
        if not book_id:
            raise ValueError("book_id is required")
        if not title or not author:
            raise ValueError("title and author are required")
        if duplicate_scope not in (None, "any", "pending"):
            raise ValueError(f"Invalid duplicate scope: {duplicate_scope}")
        source = normalize_source(source)

        with self._connection(write=True) as conn:
            if duplicate_scope is not None:
                query = "SELECT id FROM book_requests WHERE user_id = ? AND book_id = ?"
                if duplicate_scope == "pending":
                    query += " AND status = 'pending'"
                existing = conn.execute(query + " LIMIT 1", (user_id, book_id)).fetchone()
                if existing is not None:
                    raise DuplicateRequestError("Book already requested")
            try:
                cursor = conn.execute(
                    "INSERT INTO book_requests (user_id, book_id, title, author, cover, isbn, source) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (user_id, book_id, title, author, cover, isbn, source),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Could not create request: {e}") from e
            row = conn.execute("SELECT * FROM book_requests WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _request_row(row)

    def get_request(self, request_id: int) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM book_requests WHERE id = ?", (request_id,)).fetchone()
        return _request_row(row)

    def list_requests(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        acquisition_status: Optional[str] = None,
        book_id: Optional[str] = None,
        acquisition_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Requests matching every given filter, newest first."""
        filters = {
            "user_id": user_id,
            "status": normalize_request_status(status) if status is not None else None,
            "acquisition_status": (
                normalize_acquisition_status(acquisition_status) if acquisition_status is not None else None
            ),
            "book_id": book_id,
            "acquisition_id": str(acquisition_id) if acquisition_id is not None else None,
        }
        active = {column: value for column, value in filters.items() if value is not None}

        query = "SELECT * FROM book_requests"
        if active:
            query += " WHERE " + " AND ".join(f"{column} = ?" for column in active)
        query += " ORDER BY created_at DESC, id DESC"
        params: List[Any] = list(active.values())

        if limit is not None or offset:
            # SQLite needs a LIMIT before OFFSET; -1 means unbounded
            query += " LIMIT ? OFFSET ?"
            params += [int(limit) if limit is not None else -1, int(offset or 0)]

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_request_row(row) for row in rows]

    def list_tracked_requests(self) -> List[Dict[str, Any]]:
        """Approved requests handed to the acquisition system and still awaiting download."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM book_requests "
                "WHERE status = 'approved' AND acquisition_status = 'added' AND acquisition_id IS NOT NULL "
                "ORDER BY id"
            ).fetchall()
        return [_request_row(row) for row in rows]

    def update_request(
        self,
        request_id: int,
        expected_current_status: Optional[str] = None,
        expected_acquisition_status: Optional[str] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        """Update request fields and return the updated record.

        The expected_* arguments turn the update into a compare-and-set: if the
        stored row no longer matches, ValueError is raised and nothing is written.
        """
        unknown = set(fields) - _REQUEST_COLUMNS
        if unknown:
            raise ValueError(f"Invalid request column: {', '.join(sorted(unknown))}")

        with self._connection(write=True) as conn:
            current = _request_row(
                conn.execute("SELECT * FROM book_requests WHERE id = ?", (request_id,)).fetchone()
            )
            if current is None:
                raise ValueError(f"Request {request_id} not found")

            if (
                expected_current_status is not None
                and current["status"] != normalize_request_status(expected_current_status)
            ):
                raise ValueError("Request state changed before update")
            if (
                expected_acquisition_status is not None
                and current["acquisition_status"] != normalize_acquisition_status(expected_acquisition_status)
            ):
                raise ValueError("Request acquisition state changed before update")

            if not fields:
                return current

            changes = self._prepare_request_changes(current, fields)
            assignments = ", ".join(f"{column} = ?" for column in changes)
            conn.execute(
                f"UPDATE book_requests SET {assignments} WHERE id = ?",
                (*changes.values(), request_id),
            )
            row = conn.execute("SELECT * FROM book_requests WHERE id = ?", (request_id,)).fetchone()
        return _request_row(row)

    @staticmethod
    def _prepare_request_changes(current: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        changes = dict(fields)
        if "status" in changes:
            changes["status"] = validate_status_transition(current["status"], changes["status"])[1]
        if "acquisition_status" in changes:
            changes["acquisition_status"] = normalize_acquisition_status(changes["acquisition_status"])

        status = changes.get("status", current["status"])
        acquisition_status = changes.get("acquisition_status", current["acquisition_status"])
        if status == "pending" and acquisition_status != "pending":
            raise ValueError("Pending requests cannot carry acquisition state")

        if changes.get("acquisition_id") is not None:
            changes["acquisition_id"] = str(changes["acquisition_id"])
        if "tags" in changes:
            if not isinstance(changes["tags"], list):
                raise ValueError("tags must be a list")
            changes["tags"] = json.dumps(changes["tags"])

        changes["updated_at"] = _now_timestamp()
        return changes

    def count_requests_by_status(self) -> Dict[str, int]:
        """Request counts keyed by status, zero-filled for statuses with no rows."""
        counts = dict.fromkeys(("pending", "approved", "denied", "available"), 0)
        with self._connection() as conn:
            for row in conn.execute("SELECT status, COUNT(*) AS n FROM book_requests GROUP BY status"):
                counts[row["status"]] = row["n"]
        return counts

    def count_user_pending_requests(self, user_id: int) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM book_requests WHERE user_id = ? AND status = 'pending'",
                (user_id,),
            ).fetchone()
        return int(row["n"])
