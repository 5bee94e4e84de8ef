"""
Tests for TaskService/UserService and the referential guard.

Covers outcome classification (not-found vs conflict vs no-op), the
assignee existence check, username/email uniqueness checks and the
constraint-violation fallback used when a concurrent request slips past a
pre-check.
"""

import sqlite3
from unittest.mock import patch

import pytest

from task_tracker.errors import ConflictFault, EmptyPatch, NotFoundFault, ValidationFault
from task_tracker.guards import (
    constraint_violations,
    ensure_identity_available,
    ensure_user_exists,
)
from task_tracker.query import TaskFilter
from task_tracker.service import TaskService, UserService


def _task_count(database):
    return database._connection.execute("SELECT COUNT(*) FROM tasks").fetchone()[0]


class TestReferentialGuard:

    def test_null_assignee_passes(self, db):
        ensure_user_exists(db, None)

    def test_existing_assignee_passes(self, seeded):
        ensure_user_exists(seeded.db, seeded.alice["id"])

    def test_missing_assignee_is_validation_fault(self, db):
        with pytest.raises(ValidationFault) as exc_info:
            ensure_user_exists(db, 77)
        assert exc_info.value.message == "Assigned user does not exist"
        assert exc_info.value.status_code == 400

    def test_identity_taken_by_other_user(self, seeded):
        with pytest.raises(ConflictFault):
            ensure_identity_available(seeded.db, username="alice", email="new@example.com")

    def test_user_may_keep_own_identity(self, seeded):
        ensure_identity_available(
            seeded.db, username="alice", email="alice@example.com",
            exclude_id=seeded.alice["id"],
        )

    def test_unique_violation_maps_to_conflict(self):
        with pytest.raises(ConflictFault) as exc_info:
            with constraint_violations("taken"):
                raise sqlite3.IntegrityError("UNIQUE constraint failed: users.username")
        assert exc_info.value.message == "taken"
        assert exc_info.value.status_code == 409

    def test_foreign_key_violation_maps_to_missing_assignee(self):
        with pytest.raises(ValidationFault):
            with constraint_violations():
                raise sqlite3.IntegrityError("FOREIGN KEY constraint failed")

    def test_other_integrity_errors_propagate(self):
        with pytest.raises(sqlite3.IntegrityError):
            with constraint_violations():
                raise sqlite3.IntegrityError("CHECK constraint failed: status_vocabulary")


class TestTaskService:

    def test_create_with_missing_assignee_writes_nothing(self, db):
        service = TaskService(db)
        with pytest.raises(ValidationFault):
            service.create_task({"title": "Orphan", "assigned_to": 12345})
        assert _task_count(db) == 0

    def test_create_race_falls_back_to_foreign_key(self, db):
        """A user deleted between check and insert is caught by the constraint."""
        service = TaskService(db)
        with patch("task_tracker.service.ensure_user_exists"):
            with pytest.raises(ValidationFault):
                service.create_task({"title": "Orphan", "assigned_to": 12345})
        assert _task_count(db) == 0

    def test_create_with_assignee(self, seeded):
        task = TaskService(seeded.db).create_task(
            {"title": "Pair review", "assigned_to": seeded.bob["id"]}
        )
        assert task["assigned_user_name"] == "Bob Jones"

    def test_get_missing_task(self, db):
        with pytest.raises(NotFoundFault) as exc_info:
            TaskService(db).get_task(1)
        assert exc_info.value.message == "Task not found"

    def test_optimistic_update_round(self, seeded):
        service = TaskService(seeded.db)
        original = seeded.design

        updated = service.update_task(original["id"], {"status": "done"}, original["updated_at"])
        assert updated["updated_at"] != original["updated_at"]

        with pytest.raises(ConflictFault) as exc_info:
            service.update_task(original["id"], {"status": "done"}, original["updated_at"])
        assert exc_info.value.message == "Task was modified by someone else"

    def test_update_missing_task_without_timestamp_is_not_found(self, db):
        with pytest.raises(NotFoundFault):
            TaskService(db).update_task(404, {"title": "Nobody"})

    def test_update_missing_task_with_timestamp_is_conflict(self, db):
        with pytest.raises(ConflictFault):
            TaskService(db).update_task(404, {"title": "Nobody"}, "2024-01-01T00:00:00.000000Z")

    def test_empty_patch_is_distinct_from_not_found(self, db):
        with pytest.raises(EmptyPatch):
            TaskService(db).update_task(404, {})

    def test_update_to_missing_assignee(self, seeded):
        with pytest.raises(ValidationFault):
            TaskService(seeded.db).update_task(seeded.retro["id"], {"assigned_to": 999})
        assert seeded.db.get_task(seeded.retro["id"])["assigned_to"] is None

    def test_update_can_unassign(self, seeded):
        task = TaskService(seeded.db).update_task(seeded.design["id"], {"assigned_to": None})
        assert task["assigned_to"] is None

    def test_delete_twice_is_not_found_twice(self, seeded):
        service = TaskService(seeded.db)
        service.delete_task(seeded.retro["id"])
        for _ in range(2):
            with pytest.raises(NotFoundFault):
                service.delete_task(seeded.retro["id"])

    def test_list_tasks_delegates_filter(self, seeded):
        rows = TaskService(seeded.db).list_tasks(TaskFilter(status=["done"]))
        assert [row["id"] for row in rows] == [seeded.release["id"]]


class TestUserService:

    def test_create_duplicate_is_conflict(self, seeded):
        with pytest.raises(ConflictFault) as exc_info:
            UserService(seeded.db).create_user(
                {"username": "alice", "email": "fresh@example.com", "full_name": "A"}
            )
        assert exc_info.value.message == "Username or email already exists"

    def test_create_race_falls_back_to_unique_constraint(self, seeded):
        with patch("task_tracker.service.ensure_identity_available"):
            with pytest.raises(ConflictFault):
                UserService(seeded.db).create_user(
                    {"username": "bob", "email": "bob2@example.com", "full_name": "B"}
                )

    def test_update_to_taken_email_is_conflict(self, seeded):
        with pytest.raises(ConflictFault) as exc_info:
            UserService(seeded.db).update_user(seeded.bob["id"], {"email": "alice@example.com"})
        assert exc_info.value.message == "Username or email already in use"

    def test_update_keeping_own_username(self, seeded):
        user = UserService(seeded.db).update_user(
            seeded.bob["id"], {"username": "bob", "full_name": "Bobby"}
        )
        assert user["full_name"] == "Bobby"

    def test_update_missing_user(self, db):
        with pytest.raises(NotFoundFault) as exc_info:
            UserService(db).update_user(5, {"full_name": "Nobody"})
        assert exc_info.value.message == "User not found"

    def test_update_empty_patch(self, seeded):
        with pytest.raises(EmptyPatch):
            UserService(seeded.db).update_user(seeded.bob["id"], {})

    def test_delete_reports_affected_tasks(self, seeded):
        result = UserService(seeded.db).delete_user(seeded.alice["id"])
        assert result["deleted"] is True
        assert result["affected_tasks_count"] == 2
        assert result["affected_task_ids"] == [seeded.design["id"], seeded.build["id"]]

    def test_delete_missing_user_twice(self, seeded):
        service = UserService(seeded.db)
        service.delete_user(seeded.bob["id"])
        for _ in range(2):
            with pytest.raises(NotFoundFault):
                service.delete_user(seeded.bob["id"])
