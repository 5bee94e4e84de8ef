"""
Command-line entry point for Task Tracker.

Commands:
    serve    Run the REST API with uvicorn
    init-db  Create (or recreate) the database schema
    import   Load users and tasks from a YAML seed file
"""

import logging
import os

import click

from .config import Settings
from .database import TaskDatabase
from .importer import import_seed_from_file


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def main(verbose):
    """Task Tracker: tasks, users and assignment over a REST API."""
    logging.basicConfig(level=logging.DEBUG if verbose else Settings.from_env().log_level)


@main.command()
@click.option("--host", default=None, help="Bind address (default: $HOST or 0.0.0.0)")
@click.option("--port", default=None, type=int, help="Port (default: $PORT or 5000)")
@click.option("--db-path", default=None, help="SQLite file (default: $DATABASE_PATH)")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host, port, db_path, reload):
    """Run the REST API."""
    import uvicorn

    settings = Settings.from_env()
    if db_path:
        # The app reads its settings from the environment at import time
        os.environ["DATABASE_PATH"] = db_path

    host = host or settings.host
    port = port or settings.port
    click.echo(f"Task Tracker API on http://{host}:{port} (db: {db_path or settings.database_path})")
    uvicorn.run(
        "task_tracker.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@main.command("init-db")
@click.option("--db-path", default=None, help="SQLite file (default: $DATABASE_PATH)")
@click.option("--drop", is_flag=True, help="Drop existing tables first")
def init_db(db_path, drop):
    """Create the database schema."""
    db_path = db_path or Settings.from_env().database_path
    if drop:
        click.confirm(f"Drop all data in {db_path}?", abort=True)

    with TaskDatabase(db_path) as db:
        if drop:
            db.initialize_fresh()
        click.echo(f"Database ready at {db_path} (search: {db.search_capability})")


@main.command("import")
@click.argument("yaml_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--db-path", default=None, help="SQLite file (default: $DATABASE_PATH)")
def import_command(yaml_file, db_path):
    """Import users and tasks from YAML_FILE."""
    db_path = db_path or Settings.from_env().database_path
    with TaskDatabase(db_path) as db:
        try:
            stats = import_seed_from_file(db, yaml_file)
        except ValueError as e:
            raise click.ClickException(str(e))

    click.echo(
        f"Imported {stats['users_created']} new users, updated {stats['users_updated']}, "
        f"created {stats['tasks_created']} tasks"
    )


if __name__ == "__main__":
    main()
