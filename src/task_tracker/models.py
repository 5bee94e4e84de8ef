"""
Pydantic models for Task Tracker API request/response validation.

Provides validation for task and user create/update bodies, plus the
response and error envelopes returned by the REST layer.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .query import TASK_PRIORITIES, TASK_STATUSES


def _trimmed(value: Optional[str], field_name: str, max_length: int) -> str:
    if value is None:
        raise ValueError(f"{field_name} cannot be null")
    value = value.strip()
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > max_length:
        raise ValueError(f"{field_name} must be at most {max_length} characters")
    return value


def _check_status(value: Optional[str]) -> Optional[str]:
    if value is None:
        raise ValueError("status cannot be null")
    if value not in TASK_STATUSES:
        raise ValueError(f"status must be one of: {', '.join(TASK_STATUSES)}")
    return value


def _check_priority(value: Optional[str]) -> Optional[str]:
    if value is None:
        raise ValueError("priority cannot be null")
    if value not in TASK_PRIORITIES:
        raise ValueError(f"priority must be one of: {', '.join(TASK_PRIORITIES)}")
    return value


def _check_email(value: Any) -> Any:
    """Trim and bound the raw email; EmailStr checks the address itself."""
    if value is not None and not isinstance(value, str):
        return value
    return _trimmed(value, "email", 100)


class TaskCreate(BaseModel):
    """Request model for creating a task."""

    title: str = Field(description="Task title, 1-200 characters after trimming")
    description: Optional[str] = Field(None, max_length=5000)
    status: str = Field("todo", description="todo | in-progress | done")
    priority: str = Field("medium", description="low | medium | high")
    due_date: Optional[date] = None
    assigned_to: Optional[int] = Field(None, description="User id, or null for unassigned")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _trimmed(v, "title", 200)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _check_status(v)

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v):
        return _check_priority(v)


class TaskUpdate(BaseModel):
    """
    Request model for partial task updates.

    Only fields present in the body are written. updated_at is not a value to
    store: it is the caller's last-known timestamp for the optimistic lock.
    """

    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = Field(None, max_length=5000)
    status: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[date] = None
    assigned_to: Optional[int] = None
    updated_at: Optional[str] = Field(None, description="Expected last-modified timestamp")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        return _trimmed(v, "title", 200)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _check_status(v)

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v):
        return _check_priority(v)

    @field_validator("updated_at")
    @classmethod
    def validate_updated_at(cls, v):
        if v is None:
            return v
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("updated_at must be an ISO-8601 timestamp")
        return v

    def patch(self) -> Dict[str, Any]:
        """Fields supplied by the caller, excluding the lock timestamp."""
        return self.model_dump(exclude_unset=True, exclude={"updated_at"})


class UserCreate(BaseModel):
    """Request model for creating a user."""

    username: str
    email: EmailStr
    full_name: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        return _trimmed(v, "username", 50)

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, v):
        return _check_email(v)

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v):
        return _trimmed(v, "full_name", 100)


class UserUpdate(BaseModel):
    """Request model for partial user updates."""

    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = None
    email: Optional[EmailStr] = None
    full_name: Optional[str] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, v):
        return _trimmed(v, "username", 50)

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, v):
        return _check_email(v)

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v):
        return _trimmed(v, "full_name", 100)

    def patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class DeleteUserResponse(BaseModel):
    """Response model for user deletion with task unassignment."""

    deleted: bool
    affected_tasks_count: int
    affected_task_ids: List[int]
    message: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    message: str
    database_connected: bool
    search_capability: str


class ErrorResponse(BaseModel):
    """Standard error response model."""

    status: int
    error: str


def create_error_response(message: str, code: int) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    return {"status": code, "error": message}
