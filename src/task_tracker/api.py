"""
FastAPI Backend for Task Tracker

Provides REST endpoints for the Users and Tasks resources on top of the
TaskDatabase store handle. The handle is created in the application lifespan
and injected into endpoints through get_database, so tests can swap in their
own store with dependency overrides.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings
from .database import TaskDatabase
from .errors import TaskTrackerError
from .models import (
    DeleteUserResponse,
    HealthResponse,
    TaskCreate,
    TaskUpdate,
    UserCreate,
    UserUpdate,
    create_error_response,
)
from .query import TaskFilter
from .service import TaskService, UserService

settings = Settings.from_env()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# Store handle owned by the lifespan; None until startup completes
db_instance: Optional[TaskDatabase] = None


def get_database() -> TaskDatabase:
    """
    FastAPI dependency to provide the store handle.

    Raises:
        HTTPException: 503 if the database is not available
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_task_service(db: TaskDatabase = Depends(get_database)) -> TaskService:
    return TaskService(db)


def get_user_service(db: TaskDatabase = Depends(get_database)) -> UserService:
    return UserService(db)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store at startup and close it at shutdown."""
    global db_instance

    try:
        db_instance = TaskDatabase(settings.database_path)
        logger.info(f"Database initialized: {settings.database_path}")
        logger.info("Task Tracker API starting up...")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    if db_instance:
        db_instance.close()
        db_instance = None
        logger.info("Database connection closed")


app = FastAPI(
    title="Task Tracker API",
    description="REST API for tracking tasks and assigning them to users",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TaskTrackerError)
async def task_tracker_error_handler(request: Request, exc: TaskTrackerError):
    """Client faults: report the classified status and message."""
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.message, exc.status_code),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Schema violations are client faults (400) with every message joined."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse(
        status_code=400,
        content=create_error_response("; ".join(messages), 400),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(str(exc.detail), exc.status_code),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Server faults: log everything, tell the caller nothing."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content=create_error_response("Internal Server Error", 500),
    )


@app.get("/api/health", response_model=HealthResponse)
async def health_check(db: TaskDatabase = Depends(get_database)):
    """Health check for monitoring and load balancers."""
    connected = db.ping()
    return HealthResponse(
        status="ok" if connected else "degraded",
        message="Task Tracker API running",
        database_connected=connected,
        search_capability=db.search_capability,
    )


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------

@app.get("/api/tasks")
async def list_tasks(
    status: Optional[str] = Query(None, description="Comma-separated statuses"),
    priority: Optional[str] = Query(None, description="Comma-separated priorities"),
    assigned_to: Optional[str] = Query(
        None, description="Comma-separated user ids; 'null' selects unassigned tasks"
    ),
    search: Optional[str] = None,
    sort: Optional[str] = None,
    order: Optional[str] = None,
    due_date_from: Optional[date] = None,
    due_date_to: Optional[date] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    service: TaskService = Depends(get_task_service),
) -> List[Dict[str, Any]]:
    """
    List tasks with filtering, full-text search, sorting and pagination.

    Each row includes assigned_user_name and total_count (the size of the full
    matching set). limit defaults to 20 and is capped at 100.
    """
    task_filter = TaskFilter.from_query(
        status=status,
        priority=priority,
        assigned_to=assigned_to,
        search=search,
        sort=sort,
        order=order,
        due_date_from=due_date_from,
        due_date_to=due_date_to,
        limit=limit,
        offset=offset,
    )
    return service.list_tasks(task_filter)


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: int, service: TaskService = Depends(get_task_service)):
    return service.get_task(task_id)


@app.post("/api/tasks", status_code=201)
async def create_task(body: TaskCreate, service: TaskService = Depends(get_task_service)):
    return service.create_task(body.model_dump())


@app.put("/api/tasks/{task_id}")
async def update_task(
    task_id: int, body: TaskUpdate, service: TaskService = Depends(get_task_service)
):
    """
    Partially update a task.

    Send the task's current updated_at in the body to make the update
    conditional: a 409 means someone else changed the task since it was read.
    """
    return service.update_task(task_id, body.patch(), body.updated_at)


@app.delete("/api/tasks/{task_id}", status_code=204)
async def delete_task(task_id: int, service: TaskService = Depends(get_task_service)):
    service.delete_task(task_id)
    return Response(status_code=204)


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------

@app.get("/api/users")
async def list_users(
    limit: int = Query(100, ge=1),
    offset: int = Query(0, ge=0),
    service: UserService = Depends(get_user_service),
) -> List[Dict[str, Any]]:
    return service.list_users(limit, offset)


@app.get("/api/users/{user_id}")
async def get_user(user_id: int, service: UserService = Depends(get_user_service)):
    return service.get_user(user_id)


@app.post("/api/users", status_code=201)
async def create_user(body: UserCreate, service: UserService = Depends(get_user_service)):
    return service.create_user(body.model_dump())


@app.put("/api/users/{user_id}")
async def update_user(
    user_id: int, body: UserUpdate, service: UserService = Depends(get_user_service)
):
    return service.update_user(user_id, body.patch())


@app.delete("/api/users/{user_id}", response_model=DeleteUserResponse)
async def delete_user(user_id: int, service: UserService = Depends(get_user_service)):
    """Delete a user; their tasks are unassigned in the same transaction."""
    return service.delete_user(user_id)
