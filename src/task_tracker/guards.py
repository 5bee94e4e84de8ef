"""
Referential checks run before writes.

The pre-checks give precise messages in the common case. They are
read-then-act, so two concurrent requests can both pass them; the store's own
constraints catch that race and constraint_violations() maps those errors to
the same faults the pre-checks raise.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from .database import TaskDatabase
from .errors import ConflictFault, ValidationFault

logger = logging.getLogger(__name__)

ASSIGNEE_MISSING = "Assigned user does not exist"


def ensure_user_exists(db: TaskDatabase, user_id: Optional[int]) -> None:
    """
    Raise ValidationFault if a non-null assignee does not reference a user.
    """
    if user_id is None:
        return
    if not db.user_exists(user_id):
        logger.info(f"Rejected assignment to missing user {user_id}")
        raise ValidationFault(ASSIGNEE_MISSING)


def ensure_identity_available(
    db: TaskDatabase,
    username: Optional[str] = None,
    email: Optional[str] = None,
    exclude_id: Optional[int] = None,
    message: str = "Username or email already exists",
) -> None:
    """
    Raise ConflictFault if another user already holds the username or email.

    Args:
        db: Store handle
        username: Target username, or None when unchanged
        email: Target email, or None when unchanged
        exclude_id: The user being updated, which may keep its own values
        message: Conflict message for the caller
    """
    for holder in db.find_users_by_identity(username=username, email=email):
        if holder["id"] != exclude_id:
            raise ConflictFault(message)


@contextmanager
def constraint_violations(unique_message: str = "Resource already exists") -> Iterator[None]:
    """
    Translate store constraint errors raised inside the block.

    UNIQUE failures become ConflictFault(unique_message) and FOREIGN KEY
    failures become the missing-assignee ValidationFault. Any other integrity
    error propagates unchanged.
    """
    try:
        yield
    except sqlite3.IntegrityError as e:
        text = str(e)
        if "UNIQUE constraint failed" in text:
            logger.info(f"Uniqueness race caught by constraint: {text}")
            raise ConflictFault(unique_message) from e
        if "FOREIGN KEY constraint failed" in text:
            logger.info(f"Assignment race caught by constraint: {text}")
            raise ValidationFault(ASSIGNEE_MISSING) from e
        raise
