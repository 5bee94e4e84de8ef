"""
Task and User Services

Compose the referential guard with the store executors and classify every
outcome into the error taxonomy: validation, not-found, conflict, or a store
fault that propagates unchanged.

Standard Mode Assumptions:
- The store handle is constructed by the caller and shared across requests
- Services hold no state of their own; each call reads current data
- A stale expected_updated_at is reported as a conflict even when the row
  was deleted concurrently (the UPDATE cannot tell the two apart)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .database import TaskDatabase
from .errors import ConflictFault, NotFoundFault
from .guards import constraint_violations, ensure_identity_available, ensure_user_exists
from .query import TaskFilter

logger = logging.getLogger(__name__)

USER_TAKEN = "Username or email already exists"
USER_IN_USE = "Username or email already in use"
TASK_MODIFIED = "Task was modified by someone else"


class TaskService:
    """Task operations over a TaskDatabase."""

    def __init__(self, db: TaskDatabase):
        self.db = db

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> List[Dict[str, Any]]:
        """Page of tasks with assigned_user_name and total_count on each row."""
        rows = self.db.list_tasks(task_filter)
        logger.info(f"Retrieved {len(rows)} tasks")
        return rows

    def get_task(self, task_id: int) -> Dict[str, Any]:
        task = self.db.get_task(task_id)
        if task is None:
            raise NotFoundFault("Task")
        return task

    def create_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a task after checking the assignee exists.

        Nothing is written when the assignee check fails.
        """
        ensure_user_exists(self.db, data.get("assigned_to"))
        with constraint_violations():
            task = self.db.create_task(**data)
        logger.info(f"Created task {task['id']}")
        return task

    def update_task(
        self,
        task_id: int,
        patch: Dict[str, Any],
        expected_updated_at: Optional[Union[str, datetime]] = None,
    ) -> Dict[str, Any]:
        """
        Apply a partial update with optional optimistic locking.

        Raises:
            EmptyPatch: Patch has no fields
            ValidationFault: Unknown fields or missing assignee
            ConflictFault: No row matched and expected_updated_at was given
            NotFoundFault: No row matched and no expected_updated_at was given
        """
        if patch.get("assigned_to") is not None:
            ensure_user_exists(self.db, patch["assigned_to"])

        with constraint_violations():
            updated = self.db.update_task(task_id, patch, expected_updated_at)

        if updated is None:
            if expected_updated_at is not None:
                logger.info(f"Optimistic lock conflict on task {task_id}")
                raise ConflictFault(TASK_MODIFIED)
            raise NotFoundFault("Task")

        logger.info(f"Updated task {task_id}: {', '.join(sorted(patch))}")
        return updated

    def delete_task(self, task_id: int) -> None:
        """Delete a task; repeat calls for the same id raise NotFoundFault."""
        if not self.db.delete_task(task_id):
            raise NotFoundFault("Task")
        logger.info(f"Deleted task {task_id}")


class UserService:
    """User operations over a TaskDatabase."""

    def __init__(self, db: TaskDatabase):
        self.db = db

    def list_users(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        return self.db.list_users(limit, offset)

    def get_user(self, user_id: int) -> Dict[str, Any]:
        user = self.db.get_user(user_id)
        if user is None:
            raise NotFoundFault("User")
        return user

    def create_user(self, data: Dict[str, Any]) -> Dict[str, Any]:
        ensure_identity_available(
            self.db, username=data["username"], email=data["email"], message=USER_TAKEN
        )
        with constraint_violations(USER_TAKEN):
            user = self.db.create_user(data["username"], data["email"], data["full_name"])
        logger.info(f"Created user {user['id']} ({user['username']})")
        return user

    def update_user(self, user_id: int, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update; uniqueness is re-checked when username or
        email change.
        """
        if "username" in patch or "email" in patch:
            ensure_identity_available(
                self.db,
                username=patch.get("username"),
                email=patch.get("email"),
                exclude_id=user_id,
                message=USER_IN_USE,
            )

        with constraint_violations(USER_IN_USE):
            updated = self.db.update_user(user_id, patch)

        if updated is None:
            raise NotFoundFault("User")
        logger.info(f"Updated user {user_id}: {', '.join(sorted(patch))}")
        return updated

    def delete_user(self, user_id: int) -> Dict[str, Any]:
        """
        Delete a user, unassigning their tasks atomically.

        Returns:
            Dict with deleted, affected_task_ids, affected_tasks_count, message
        """
        result = self.db.delete_user(user_id)
        if not result["deleted"]:
            raise NotFoundFault("User")

        task_ids = result["affected_task_ids"]
        logger.info(f"Deleted user {user_id}; unassigned tasks {task_ids}")
        return {
            "deleted": True,
            "affected_tasks_count": len(task_ids),
            "affected_task_ids": task_ids,
            "message": "User deleted. Their tasks are now unassigned.",
        }
