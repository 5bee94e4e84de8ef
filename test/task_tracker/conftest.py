"""
Shared fixtures for Task Tracker tests.

Provides isolated temporary-file databases, a seeded dataset with users and
tasks covering every filter dimension, and a FastAPI TestClient wired to the
test database through dependency overrides.
"""

import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from task_tracker.api import app, get_database
from task_tracker.database import TaskDatabase


def _remove_database_files(db_path: str) -> None:
    for suffix in ("", "-wal", "-shm"):
        Path(db_path + suffix).unlink(missing_ok=True)


@pytest.fixture
def db():
    """Empty TaskDatabase backed by a temporary file."""
    fd, path = tempfile.mkstemp(suffix=".db", prefix="test_tracker_")
    os.close(fd)

    database = TaskDatabase(path)
    yield database

    database.close()
    _remove_database_files(path)


class SeededData:
    """
    Known dataset for listing tests.

    Users: alice, bob. Tasks (in creation order):
        design   todo         high    2024-03-01  alice
        build    in-progress  medium  2024-03-01  alice
        test     in-progress  low     2024-03-01  bob
        release  done         high    2024-04-15  (unassigned)
        retro    todo         low     (no date)   (unassigned)
    """

    def __init__(self, database: TaskDatabase):
        self.db = database
        self.alice = database.create_user("alice", "alice@example.com", "Alice Smith")
        self.bob = database.create_user("bob", "bob@example.com", "Bob Jones")

        self.design = database.create_task(
            "Design login page", "Wireframes for the authentication flow",
            status="todo", priority="high", due_date="2024-03-01",
            assigned_to=self.alice["id"],
        )
        self.build = database.create_task(
            "Build login API", "Token endpoint and password checks",
            status="in-progress", priority="medium", due_date="2024-03-01",
            assigned_to=self.alice["id"],
        )
        self.test = database.create_task(
            "Test login flow", "End-to-end tests for fixing regressions",
            status="in-progress", priority="low", due_date="2024-03-01",
            assigned_to=self.bob["id"],
        )
        self.release = database.create_task(
            "Release version 1.0", None,
            status="done", priority="high", due_date="2024-04-15",
        )
        self.retro = database.create_task(
            "Team retrospective", "Discuss what went well",
            status="todo", priority="low",
        )

    @property
    def all_task_ids(self):
        return {t["id"] for t in (self.design, self.build, self.test, self.release, self.retro)}


@pytest.fixture
def seeded(db):
    """Database with the SeededData users and tasks."""
    return SeededData(db)


@pytest.fixture
def client(db):
    """TestClient whose endpoints use the temporary database."""
    app.dependency_overrides[get_database] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
