"""Schema-validated tables over a local SQLite blob database.

Every command opens the blob file given by ``--db``, runs one repository
operation under the ``--database-id`` parent and prints its result as JSON.
"""

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, TypeVar

import structlog
import typer

from blobtables.errors import BlobTablesError, FieldValidationError
from blobtables.models.query import FilterCondition, QueryState, SortConfig
from blobtables.models.session import SessionContext, StoreConfig
from blobtables.services.factory import create_table_repository
from blobtables.services.table_repository import TableRepository

T = TypeVar("T")

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    logger_factory=lambda name: structlog.PrintLogger(file=sys.stderr),
    wrapper_class=structlog.BoundLogger,
    context_class=dict,
    cache_logger_on_first_use=True,
)

app = typer.Typer(
    name="blobtables",
    help="""Schema-validated tables with unique indexes, stored as whole blobs.

Examples:

  # Create a table with a unique email column
  uv run blobtables create-table users --column '{"key": "email", "type": "string", "unique": true}'

  # Insert and query documents
  uv run blobtables insert <table-id> '{"email": "a@x.com"}'
  uv run blobtables query <table-id> --filter "email:contains:x.com" --sort "email:desc"

  # Repair a unique index
  uv run blobtables rebuild-index <table-id> email""",
    rich_markup_mode="markdown",
)


@dataclass(frozen=True)
class CliSettings:
    db_path: Path
    database_id: str
    config: StoreConfig


@app.callback()
def main(
    ctx: typer.Context,
    db: str = typer.Option(
        "blobtables.db",
        "--db",
        help="SQLite file holding the blobs",
    ),
    database_id: str = typer.Option(
        "default",
        "--database-id",
        "-D",
        help="Parent under which table and index blobs live",
    ),
    timeout: float = typer.Option(
        30.0,
        "--timeout",
        "-t",
        help="Seconds before a blob store call is abandoned",
    ),
    conditional_writes: bool = typer.Option(
        False,
        "--conditional-writes",
        help="Reject saves when the table changed since it was loaded",
    ),
) -> None:
    ctx.obj = CliSettings(
        db_path=Path(db),
        database_id=database_id,
        config=StoreConfig(timeout_seconds=timeout, conditional_writes=conditional_writes),
    )


@app.command("create-table")
def create_table(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Table name"),
    column: Optional[List[str]] = typer.Option(
        None,
        "--column",
        "-c",
        help="Column definition as JSON; repeat for several columns",
    ),
) -> None:
    """Create a table and print its id."""
    columns = [_parse_json(raw, "--column") for raw in column or []]
    table_id = _run(ctx, lambda repo, session: repo.create_table(session, name, columns))
    typer.echo(table_id)


@app.command("list-tables")
def list_tables(ctx: typer.Context) -> None:
    """List the tables under the database id."""
    entries = _run(ctx, lambda repo, session: repo.list_tables(session))
    _echo_json([{"id": entry.id, "name": entry.name} for entry in entries])


@app.command("schema")
def schema(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
) -> None:
    """Print a table's column definitions."""
    columns = _run(ctx, lambda repo, session: repo.get_schema(session, table_id))
    _echo_json([column.to_record() for column in columns])


@app.command("add-column")
def add_column(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    definition: str = typer.Argument(..., help="Column definition as JSON"),
) -> None:
    """Add a column, backfilling its default into existing documents."""
    payload = _parse_json(definition, "definition")
    added = _run(ctx, lambda repo, session: repo.add_column(session, table_id, payload))
    _echo_json(added.to_record())


@app.command("drop-column")
def drop_column(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    column_key: str = typer.Argument(..., help="Key of the column to drop"),
) -> None:
    """Drop a column and its values from every document."""
    _run(ctx, lambda repo, session: repo.drop_column(session, table_id, column_key))
    typer.echo(f"Dropped column {column_key}")


@app.command()
def insert(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    document: str = typer.Argument(..., help="Document as a JSON object"),
) -> None:
    """Validate and insert a document, printing it with its system fields."""
    payload = _parse_json(document, "document")
    added = _run(ctx, lambda repo, session: repo.add_document(session, table_id, payload))
    _echo_json(added)


@app.command()
def update(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    doc_id: str = typer.Argument(..., help="Document id"),
    patch: str = typer.Argument(..., help="Fields to change as a JSON object"),
) -> None:
    """Merge fields into an existing document."""
    changes = _parse_json(patch, "patch")
    updated = _run(ctx, lambda repo, session: repo.update_document(session, table_id, doc_id, changes))
    _echo_json(updated)


@app.command()
def delete(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    doc_ids: List[str] = typer.Argument(..., help="Ids of the documents to delete"),
) -> None:
    """Delete one or more documents."""
    removed = _run(ctx, lambda repo, session: repo.bulk_delete(session, table_id, doc_ids))
    typer.echo(f"Deleted {removed} documents")


@app.command()
def query(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    filter_: Optional[List[str]] = typer.Option(
        None,
        "--filter",
        "-f",
        help="Filter as column:operator:value (operators: eq, neq, contains, gt, lt, gte, lte)",
    ),
    sort: Optional[List[str]] = typer.Option(
        None,
        "--sort",
        "-s",
        help="Sort key as column or column:desc; repeat for tie-breaks",
    ),
    page: int = typer.Option(1, "--page", "-p", help="1-indexed page number"),
    page_size: int = typer.Option(25, "--page-size", "-n", help="Documents per page"),
) -> None:
    """Filter, sort and paginate a table's documents."""
    state = QueryState(
        filters=[_parse_filter(raw) for raw in filter_ or []],
        sort=[_parse_sort(raw) for raw in sort or []],
        page=page,
        page_size=page_size,
    )
    result = _run(ctx, lambda repo, session: repo.query_documents(session, table_id, state))
    _echo_json(result.to_record())


@app.command("rebuild-index")
def rebuild_index(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    column_key: str = typer.Argument(..., help="Key of a unique column"),
) -> None:
    """Recompute a unique column's index from the table's documents."""
    index_file_id = _run(ctx, lambda repo, session: repo.rebuild_index(session, table_id, column_key))
    typer.echo(index_file_id)


@app.command()
def check(
    ctx: typer.Context,
    table_id: str = typer.Argument(..., help="Table id"),
    document: str = typer.Argument(..., help="Candidate document as a JSON object"),
    exclude: Optional[str] = typer.Option(
        None,
        "--exclude",
        "-e",
        help="Document id to ignore in uniqueness checks (when editing it)",
    ),
) -> None:
    """Report validation and uniqueness problems without writing."""
    payload = _parse_json(document, "document")
    problems = _run(ctx, lambda repo, session: repo.check_constraints(session, table_id, payload, exclude))
    _echo_json([problem.model_dump() for problem in problems])
    if problems:
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from blobtables import __version__

    typer.echo(f"blobtables {__version__}")


def _run(ctx: typer.Context, operation: Callable[[TableRepository, SessionContext], Awaitable[T]]) -> T:
    settings: CliSettings = ctx.obj
    session = SessionContext(database_id=settings.database_id)

    async def run() -> T:
        async with create_table_repository(settings.db_path, settings.config) as repo:
            return await operation(repo, session)

    try:
        return asyncio.run(run())
    except FieldValidationError as e:
        for error in e.errors:
            typer.echo(f"{error.field}: {error.message}", err=True)
        raise typer.Exit(1)
    except BlobTablesError as e:
        structlog.get_logger(__name__).error("command_failed", error=str(e), error_type=type(e).__name__)
        typer.echo(str(e), err=True)
        raise typer.Exit(1)


def _parse_json(raw: str, name: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"invalid JSON: {e.msg}", param_hint=name) from e
    if not isinstance(value, dict):
        raise typer.BadParameter("expected a JSON object", param_hint=name)
    return value


def _parse_filter(raw: str) -> FilterCondition:
    parts = raw.split(":", 2)
    if len(parts) != 3:
        raise typer.BadParameter("expected column:operator:value", param_hint="--filter")
    column, operator, value = parts
    try:
        return FilterCondition(column=column, operator=operator, value=value)
    except ValueError as e:
        raise typer.BadParameter(f"invalid filter {raw!r}", param_hint="--filter") from e


def _parse_sort(raw: str) -> SortConfig:
    column, _, direction = raw.partition(":")
    try:
        return SortConfig(column=column, direction=direction or "asc")
    except ValueError as e:
        raise typer.BadParameter(f"invalid sort {raw!r}", param_hint="--sort") from e


def _echo_json(value: Any) -> None:
    typer.echo(json.dumps(value, default=str))
