"""Command line interface for :mod:`cortex_brain`.

This module uses `Typer` to run the server and background loops, apply
migrations and submit or inspect brain requests.
"""

import asyncio
import json
from typing import Optional

import typer

from .config import settings
from .db import Database, run_migrations
from .errors import CortexError
from .notify import SessionRegistry
from .server import configure_logging
from .service import BrainService

app = typer.Typer(add_completion=False, help="Run and operate the Cortex Brain pipeline")


def _service(ctx: typer.Context) -> BrainService:
    return BrainService(Database(ctx.obj["db"]), settings)


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, help="Database URL (defaults to CORTEX_DATABASE_URL)"),
) -> None:
    """Cortex Brain command line interface."""
    ctx.obj = {"db": db or settings.database_url}


@app.command()
def migrate(ctx: typer.Context) -> None:
    """Apply database migrations."""
    run_migrations(ctx.obj["db"])
    typer.echo("database is up to date")


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    background: bool = typer.Option(True, help="Run worker and stream consumer in-process"),
) -> None:
    """Serve the HTTP API."""
    import uvicorn

    from .server import create_app

    configure_logging(settings.log_level)
    run_migrations(ctx.obj["db"])
    application = create_app(_service(ctx), SessionRegistry(), background=background)
    uvicorn.run(application, host=host, port=port)


@app.command()
def worker(
    ctx: typer.Context,
    once: bool = typer.Option(False, help="Process a single tick and exit"),
) -> None:
    """Run the polling worker."""
    configure_logging(settings.log_level)
    service = _service(ctx)
    brain_worker = service.make_worker()
    if once:
        job = asyncio.run(brain_worker.tick())
        typer.echo(json.dumps(job.to_dict() if job else None, default=str))
        return
    asyncio.run(brain_worker.run())


@app.command()
def bus(
    ctx: typer.Context,
    once: bool = typer.Option(False, help="Handle at most one entry and exit"),
) -> None:
    """Run the stream consumer that vectorizes memories."""
    configure_logging(settings.log_level)
    consumer = _service(ctx).make_consumer()
    if once:
        consumer.setup()

        async def _once() -> int:
            return await consumer.recover() + await consumer.poll_once()

        typer.echo(f"handled {asyncio.run(_once())} entries")
        return
    asyncio.run(consumer.run())


@app.command()
def submit(
    ctx: typer.Context,
    user: str = typer.Option(..., help="Owner user id"),
    query: Optional[str] = typer.Option(None, help="Request text"),
    file_id: Optional[str] = typer.Option(None, help="Previously registered file id"),
    lobe: str = typer.Option("auto", help="Force a lobe or let the router decide"),
    mode: Optional[str] = typer.Option(None, help="Answer style"),
) -> None:
    """Queue a brain request and print its id."""
    try:
        job_id = _service(ctx).create_job(user, query, file_id=file_id, lobe=lobe, mode=mode)
    except CortexError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(job_id)


@app.command()
def job(ctx: typer.Context, job_id: str = typer.Argument(..., help="Brain request id")) -> None:
    """Print a brain request as JSON."""
    try:
        record = _service(ctx).get_job(job_id)
    except CortexError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(record.to_dict(), indent=2, default=str))


if __name__ == "__main__":  # pragma: no cover
    app()
