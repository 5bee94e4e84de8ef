"""
YAML Seed Importer

Loads users and tasks from a YAML document in a single transaction. Users are
upserted by username; tasks are always inserted and name their assignee by
username, never by a numeric assigned_to. Any malformed entry, or a user whose
username or email clashes with another user, aborts the import and nothing is
written.

Document shape:
    users:
      - {username: alice, email: alice@example.com, full_name: Alice Smith}
    tasks:
      - {title: Write docs, priority: high, due_date: 2024-06-01,
         assigned_to_username: alice}
"""

import logging
import sqlite3
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from .database import TaskDatabase
from .models import TaskCreate, UserCreate
from .query import to_sql_value

logger = logging.getLogger(__name__)


def import_seed(db: TaskDatabase, yaml_data: Dict[str, Any]) -> Dict[str, int]:
    """
    Import users and tasks from parsed YAML.

    Args:
        db: TaskDatabase instance
        yaml_data: Parsed YAML document

    Returns:
        Dict with users_created, users_updated and tasks_created counts

    Raises:
        ValueError: For malformed documents or entries
        sqlite3.Error: For database operation failures
    """
    users = yaml_data.get("users") or []
    tasks = yaml_data.get("tasks") or []
    if not isinstance(users, list):
        raise ValueError("YAML 'users' must be a list")
    if not isinstance(tasks, list):
        raise ValueError("YAML 'tasks' must be a list")

    stats = {"users_created": 0, "users_updated": 0, "tasks_created": 0}

    with db.transaction() as cursor:
        user_ids: Dict[str, int] = {}
        for index, entry in enumerate(users):
            user = _validated(UserCreate, entry, f"users[{index}]")
            try:
                user_id, created = _upsert_user(cursor, db.next_timestamp(), user)
            except sqlite3.IntegrityError as e:
                raise ValueError(f"users[{index}]: username or email already exists") from e
            user_ids[user.username] = user_id
            stats["users_created" if created else "users_updated"] += 1

        for index, entry in enumerate(tasks):
            if not isinstance(entry, dict):
                raise ValueError(f"tasks[{index}] must be a mapping")
            if "assigned_to" in entry:
                raise ValueError(
                    f"tasks[{index}]: name the assignee with assigned_to_username"
                )
            entry = dict(entry)
            username = entry.pop("assigned_to_username", None)
            task = _validated(TaskCreate, entry, f"tasks[{index}]")
            assignee = _resolve_assignee(cursor, user_ids, username, f"tasks[{index}]")
            now = db.next_timestamp()
            cursor.execute("""
                INSERT INTO tasks (title, description, status, priority, due_date,
                                   assigned_to, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (task.title, task.description, task.status, task.priority,
                  to_sql_value(task.due_date), assignee, now, now))
            stats["tasks_created"] += 1

    logger.info(
        "Seed import finished: %(users_created)d users created, "
        "%(users_updated)d updated, %(tasks_created)d tasks created",
        stats,
    )
    return stats


def _validated(model, entry: Any, label: str):
    if not isinstance(entry, dict):
        raise ValueError(f"{label} must be a mapping")
    try:
        return model(**entry)
    except ValidationError as e:
        messages: List[str] = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValueError(f"{label} is invalid: {'; '.join(messages)}")


def _upsert_user(cursor: sqlite3.Cursor, now: str, user: UserCreate):
    """Insert or update a user keyed by username; returns (id, created)."""
    cursor.execute("SELECT id FROM users WHERE username = ?", (user.username,))
    existing = cursor.fetchone()
    if existing is None:
        cursor.execute("""
            INSERT INTO users (username, email, full_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user.username, user.email, user.full_name, now, now))
        return cursor.lastrowid, True

    cursor.execute("""
        UPDATE users SET email = ?, full_name = ?, updated_at = ?
        WHERE id = ?
    """, (user.email, user.full_name, now, existing["id"]))
    return existing["id"], False


def _resolve_assignee(cursor: sqlite3.Cursor, user_ids: Dict[str, int],
                      username: Any, label: str):
    if username is None:
        return None
    if username in user_ids:
        return user_ids[username]
    cursor.execute("SELECT id FROM users WHERE username = ?", (username,))
    row = cursor.fetchone()
    if row is None:
        raise ValueError(f"{label}: unknown assignee '{username}'")
    return row["id"]


def import_seed_from_file(db: TaskDatabase, yaml_file_path: str) -> Dict[str, int]:
    """
    Import seed data from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For invalid YAML or malformed entries
    """
    try:
        with open(yaml_file_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a mapping at root level")

    return import_seed(db, yaml_data)
