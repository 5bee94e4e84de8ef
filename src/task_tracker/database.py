"""
Task Database Layer

Provides SQLite-based storage for users and tasks with WAL mode for concurrent
access, a full-text index over task titles and descriptions, and the query
executors behind the task listing, optimistic-lock updates and the
transactional user deletion.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import EmptyPatch
from .query import (
    TASK_MUTABLE_FIELDS,
    USER_MUTABLE_FIELDS,
    ContainsSearch,
    FullTextSearch,
    SearchPredicate,
    TaskFilter,
    build_set_clause,
    build_task_predicates,
    clamp_page,
    resolve_sort,
    to_sql_value,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

MAX_USER_PAGE_SIZE = 1000

TASK_COLUMNS = (
    "t.id, t.title, t.description, t.status, t.priority, t.due_date, "
    "t.assigned_to, t.created_at, t.updated_at"
)
USER_COLUMNS = "id, username, email, full_name, created_at, updated_at"


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the store's timestamp format (UTC, microseconds, Z)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


class TaskDatabase:
    """
    SQLite store handle for users and tasks.

    Construct one per process (API lifespan or CLI command) and close() it at
    shutdown. A single autocommit connection is shared behind a re-entrant
    lock; holding the lock is what gives multi-statement operations their
    dedicated connection.

    Features:
    - WAL mode for concurrent read/write access
    - FTS5 full-text index with a LIKE fallback on builds without FTS5
    - Store-owned, strictly increasing updated_at for optimistic locking
    - Explicit BEGIN/COMMIT/ROLLBACK transaction control
    """

    def __init__(self, db_path: str):
        """
        Initialize TaskDatabase and create the schema if needed.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._last_timestamp: Optional[datetime] = None
        self.search_predicate: SearchPredicate = ContainsSearch()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    @property
    def search_capability(self) -> str:
        """Name of the search predicate in use ("fts5" or "contains")."""
        return self.search_predicate.name

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Open the connection, configure SQLite and create the schema."""
        try:
            if self._connection is None:
                self._connection = sqlite3.connect(
                    self.db_path,
                    isolation_level=None,  # Autocommit; transactions are explicit
                    check_same_thread=False,
                )
                self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

        logger.info(
            "Database ready at %s (search capability: %s)",
            self.db_path,
            self.search_capability,
        )

    def _create_schema(self) -> None:
        """Create tables, indexes and the full-text index."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                full_name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'todo',
                priority TEXT NOT NULL DEFAULT 'medium',
                due_date TEXT,
                assigned_to INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (assigned_to) REFERENCES users (id) ON DELETE SET NULL,
                CONSTRAINT title_length CHECK (length(title) BETWEEN 1 AND 200),
                CONSTRAINT description_length CHECK (description IS NULL OR length(description) <= 5000),
                CONSTRAINT status_vocabulary CHECK (status IN ('todo', 'in-progress', 'done')),
                CONSTRAINT priority_vocabulary CHECK (priority IN ('low', 'medium', 'high'))
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(priority)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to ON tasks(assigned_to)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at)")

        self.search_predicate = self._create_fulltext_index(cursor)

    def _create_fulltext_index(self, cursor: sqlite3.Cursor) -> SearchPredicate:
        """
        Create the FTS5 index and its sync triggers.

        Returns the search predicate matching what the SQLite build supports.
        """
        cursor.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'tasks_fts'")
        existed = cursor.fetchone() is not None

        try:
            cursor.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS tasks_fts USING fts5(
                    title, description,
                    content='tasks', content_rowid='id',
                    tokenize='porter unicode61'
                )
            """)
        except sqlite3.OperationalError as e:
            logger.warning(f"FTS5 unavailable, search falls back to substring matching: {e}")
            return ContainsSearch()

        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS tasks_fts_ai AFTER INSERT ON tasks BEGIN
                INSERT INTO tasks_fts(rowid, title, description)
                VALUES (new.id, new.title, new.description);
            END
        """)
        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS tasks_fts_ad AFTER DELETE ON tasks BEGIN
                INSERT INTO tasks_fts(tasks_fts, rowid, title, description)
                VALUES ('delete', old.id, old.title, old.description);
            END
        """)
        cursor.execute("""
            CREATE TRIGGER IF NOT EXISTS tasks_fts_au AFTER UPDATE OF title, description ON tasks BEGIN
                INSERT INTO tasks_fts(tasks_fts, rowid, title, description)
                VALUES ('delete', old.id, old.title, old.description);
                INSERT INTO tasks_fts(rowid, title, description)
                VALUES (new.id, new.title, new.description);
            END
        """)

        if not existed:
            # Index rows written before the index existed
            cursor.execute("INSERT INTO tasks_fts(tasks_fts) VALUES ('rebuild')")

        return FullTextSearch()

    def _drop_existing_tables(self) -> None:
        """Drop all tables, triggers and indexes for a clean slate."""
        cursor = self._connection.cursor()
        cursor.execute("DROP TRIGGER IF EXISTS tasks_fts_ai")
        cursor.execute("DROP TRIGGER IF EXISTS tasks_fts_ad")
        cursor.execute("DROP TRIGGER IF EXISTS tasks_fts_au")
        try:
            cursor.execute("DROP TABLE IF EXISTS tasks_fts")
        except sqlite3.OperationalError as e:
            # Builds without FTS5 cannot drop the virtual table but never created it
            logger.warning(f"Could not drop tasks_fts: {e}")
        cursor.execute("DROP TABLE IF EXISTS tasks")
        cursor.execute("DROP TABLE IF EXISTS users")

    def initialize_fresh(self) -> None:
        """Drop every table and recreate the schema."""
        with self._connection_lock:
            self._initialize_database(drop_existing=True)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run statements in one transaction on the dedicated connection.

        Rolls back and re-raises on any exception; the connection lock is held
        until the transaction is finished either way.
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    def next_timestamp(self) -> str:
        """
        Current UTC time in store format, strictly later than any value this
        handle issued before.
        """
        with self._connection_lock:
            now = datetime.now(timezone.utc)
            if self._last_timestamp is not None and now <= self._last_timestamp:
                now = self._last_timestamp + timedelta(microseconds=1)
            self._last_timestamp = now
            return format_timestamp(now)

    def ping(self) -> bool:
        """Return True when the connection answers a trivial query."""
        with self._connection_lock:
            try:
                self._connection.execute("SELECT 1").fetchone()
                return True
            except sqlite3.Error:
                return False

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one task with its assignee's display name, or None."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"""
                SELECT {TASK_COLUMNS}, u.full_name AS assigned_user_name
                FROM tasks t
                LEFT JOIN users u ON t.assigned_to = u.id
                WHERE t.id = ?
            """, (task_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> List[Dict[str, Any]]:
        """
        Run the filtered, sorted, paginated task listing.

        Each row carries assigned_user_name and total_count, the size of the
        whole matching set rather than of the page. Every call re-executes
        against current data.

        Raises:
            InvalidSortField: For sort keys outside the allow-list
            sqlite3.Error: Store faults, unmodified
        """
        task_filter = task_filter or TaskFilter()

        order_by = resolve_sort(task_filter.sort, task_filter.order)
        fragments, values = build_task_predicates(task_filter, self.search_predicate)
        limit, offset = clamp_page(task_filter.limit, task_filter.offset)

        where_clause = f"WHERE {' AND '.join(fragments)}" if fragments else ""
        query = f"""
            SELECT {TASK_COLUMNS}, u.full_name AS assigned_user_name,
                   COUNT(*) OVER () AS total_count
            FROM tasks t
            LEFT JOIN users u ON t.assigned_to = u.id
            {where_clause}
            {order_by}
            LIMIT ? OFFSET ?
        """
        values.extend([limit, offset])

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, values)
            rows = [dict(row) for row in cursor.fetchall()]

        logger.debug(f"Listed {len(rows)} tasks (limit={limit}, offset={offset})")
        return rows

    def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        due_date: Optional[Any] = None,
        assigned_to: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Insert a task with defaults (status todo, priority medium).

        Returns:
            The created row with generated id and timestamps
        """
        with self._connection_lock:
            now = self.next_timestamp()
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO tasks (title, description, status, priority, due_date,
                                   assigned_to, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                title,
                description,
                status or "todo",
                priority or "medium",
                to_sql_value(due_date),
                assigned_to,
                now,
                now,
            ))
            return self.get_task(cursor.lastrowid)

    def update_task(
        self,
        task_id: int,
        patch: Dict[str, Any],
        expected_updated_at: Optional[Union[str, datetime]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Apply a partial patch, optionally as a compare-and-swap on updated_at.

        Args:
            task_id: Task to update
            patch: Subset of the mutable task fields
            expected_updated_at: Caller's last-known updated_at; when given the
                row only changes if it still carries exactly this value

        Returns:
            The updated row, or None when no row matched (missing row, or a
            stale expected_updated_at)

        Raises:
            EmptyPatch: When the patch is empty; no statement is executed
            ValidationFault: When the patch names unknown fields
        """
        set_fragments, values = build_set_clause(patch, TASK_MUTABLE_FIELDS)
        if not set_fragments:
            raise EmptyPatch()

        if isinstance(expected_updated_at, datetime):
            expected_updated_at = format_timestamp(expected_updated_at)

        with self._connection_lock:
            set_fragments.append("updated_at = ?")
            values.append(self.next_timestamp())

            query = f"UPDATE tasks SET {', '.join(set_fragments)} WHERE id = ?"
            values.append(task_id)
            if expected_updated_at is not None:
                query += " AND updated_at = ?"
                values.append(expected_updated_at)

            cursor = self._connection.cursor()
            cursor.execute(query, values)
            if cursor.rowcount == 0:
                return None
            return self.get_task(task_id)

    def delete_task(self, task_id: int) -> bool:
        """Delete a task; True if a row was removed."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def list_users(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """List users ordered by id; limit is capped at 1000."""
        limit = max(1, min(int(limit), MAX_USER_PAGE_SIZE))
        offset = max(0, int(offset))
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"""
                SELECT {USER_COLUMNS} FROM users
                ORDER BY id
                LIMIT ? OFFSET ?
            """, (limit, offset))
            return [dict(row) for row in cursor.fetchall()]

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def user_exists(self, user_id: int) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT 1 FROM users WHERE id = ?", (user_id,))
            return cursor.fetchone() is not None

    def find_users_by_identity(
        self, username: Optional[str] = None, email: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Users holding the given username or email (either may be omitted)."""
        conditions = []
        params: List[Any] = []
        if username is not None:
            conditions.append("username = ?")
            params.append(username)
        if email is not None:
            conditions.append("email = ?")
            params.append(email)
        if not conditions:
            return []

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"SELECT id, username, email FROM users WHERE {' OR '.join(conditions)}",
                params,
            )
            return [dict(row) for row in cursor.fetchall()]

    def create_user(self, username: str, email: str, full_name: str) -> Dict[str, Any]:
        """
        Insert a user.

        Raises:
            sqlite3.IntegrityError: If username or email is already taken
        """
        with self._connection_lock:
            now = self.next_timestamp()
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO users (username, email, full_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (username, email, full_name, now, now))
            return self.get_user(cursor.lastrowid)

    def update_user(self, user_id: int, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Apply a partial patch to a user.

        Returns:
            The updated row, or None if the user does not exist

        Raises:
            EmptyPatch: When the patch is empty
            ValidationFault: When the patch names unknown fields
            sqlite3.IntegrityError: On username/email uniqueness violations
        """
        set_fragments, values = build_set_clause(patch, USER_MUTABLE_FIELDS)
        if not set_fragments:
            raise EmptyPatch()

        with self._connection_lock:
            set_fragments.append("updated_at = ?")
            values.append(self.next_timestamp())
            values.append(user_id)

            cursor = self._connection.cursor()
            cursor.execute(
                f"UPDATE users SET {', '.join(set_fragments)} WHERE id = ?", values
            )
            if cursor.rowcount == 0:
                return None
            return self.get_user(user_id)

    def delete_user(self, user_id: int) -> Dict[str, Any]:
        """
        Delete a user and unassign their tasks in one transaction.

        Returns:
            Dict with deleted (bool) and affected_task_ids (ids of the tasks
            that were unassigned; empty when the user did not exist)
        """
        with self.transaction() as cursor:
            task_ids = self._select_assigned_task_ids(cursor, user_id)
            if task_ids:
                self._unassign_tasks(cursor, user_id)
            deleted = self._delete_user_row(cursor, user_id)

        return {"deleted": deleted, "affected_task_ids": task_ids if deleted else []}

    def _select_assigned_task_ids(self, cursor: sqlite3.Cursor, user_id: int) -> List[int]:
        cursor.execute("SELECT id FROM tasks WHERE assigned_to = ? ORDER BY id", (user_id,))
        return [row["id"] for row in cursor.fetchall()]

    def _unassign_tasks(self, cursor: sqlite3.Cursor, user_id: int) -> None:
        # Explicit so the unassignment refreshes updated_at like any other mutation
        cursor.execute(
            "UPDATE tasks SET assigned_to = NULL, updated_at = ? WHERE assigned_to = ?",
            (self.next_timestamp(), user_id),
        )

    def _delete_user_row(self, cursor: sqlite3.Cursor, user_id: int) -> bool:
        cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))
        return cursor.rowcount == 1

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
