"""Entry-point for the catalog admin application."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Iterator, Optional

import typer
import uvicorn

from catalog_admin.bootstrap import CatalogServices, build_services, initialize_app
from catalog_admin.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from catalog_admin.services.errors import CatalogError
from catalog_admin.web import create_app


LOGGER = logging.getLogger("catalog_admin.cli")


cli = typer.Typer(add_completion=False, help="Catalog admin management commands")


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


def _load_services() -> CatalogServices:
    config = initialize_app()
    _prepare_logging(config.storage_root)
    return build_services(config)


@contextlib.contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except CatalogError as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="CATALOG_ADMIN_ROOT_PATH",
    ),
) -> None:
    """Run the admin panel API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    services = build_services(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(services, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server

    LOGGER.info("Serving catalog admin on http://%s:%s%s", host, port, normalized_root)
    server.run()


@cli.command("claim-next")
def claim_next() -> None:
    """Claim the oldest pending upload job, as the worker would."""

    services = _load_services()
    with _cli_errors():
        job = services.jobs.claim_next()
    if job is None:
        typer.echo("No pending job.")
        return
    typer.echo(json.dumps(asdict(job), indent=2))


@cli.command()
def enqueue(
    course_id: int = typer.Argument(..., help="Course identifier"),
    lecture_number: int = typer.Argument(..., help="Lecture number within the course"),
) -> None:
    """Queue an upload job for one lecture."""

    services = _load_services()
    with _cli_errors():
        job_id = services.jobs.enqueue(course_id, lecture_number)
    typer.echo(f"Queued job {job_id}.")


@cli.command()
def cancel(job_id: int = typer.Argument(..., help="Upload job identifier")) -> None:
    """Cancel a pending or running upload job."""

    services = _load_services()
    with _cli_errors():
        action = services.jobs.cancel(job_id)
    typer.echo(f"Job {job_id} {action}.")


@cli.command()
def duplicates(
    auto_merge: bool = typer.Option(
        True, "--auto-merge/--no-auto-merge", help="Replay approved merge decisions first"
    ),
) -> None:
    """List exact and similar duplicate groups."""

    services = _load_services()
    with _cli_errors():
        result = services.reviewer.review(auto_merge=auto_merge)

    for outcome in result.auto_merged:
        typer.echo(
            f"Auto-merged {len(outcome.merged)} into {outcome.keep_type}#{outcome.keep_id} "
            f"({outcome.signature})"
        )
    for label, groups in (("Exact", result.exact), ("Similar", result.similar)):
        typer.echo(f"{label} matches: {len(groups)}")
        for group in groups:
            members = ", ".join(
                f"{entity.type}#{entity.id} {entity.display_name}" for entity in group.entities
            )
            typer.echo(f"  [{group.similarity:.2f}] {group.name}: {members}")


@cli.command()
def merge(
    keep_type: str = typer.Argument(..., help="Entity type of the record to keep"),
    keep_id: int = typer.Argument(..., help="Identifier of the record to keep"),
    delete_type: str = typer.Argument(..., help="Entity type of the record to fold in"),
    delete_id: int = typer.Argument(..., help="Identifier of the record to fold in"),
    group_sig: Optional[str] = typer.Option(None, help="Duplicate group signature to approve"),
) -> None:
    """Merge one entity into another."""

    services = _load_services()
    with _cli_errors():
        result = services.reviewer.merge(
            keep_id, keep_type, delete_id, delete_type, group_sig=group_sig
        )
    if not result.merged:
        typer.echo("Nothing to merge; the record was already removed.")
        return
    typer.echo(
        f"Merged {delete_type}#{delete_id} into {keep_type}#{keep_id} "
        f"({result.relinked} links moved)."
    )


@cli.command()
def restore(backup_id: int = typer.Argument(..., help="Backup identifier")) -> None:
    """Restore a soft-deleted entity with its lecture links."""

    services = _load_services()
    with _cli_errors():
        new_id = services.recovery.restore(backup_id)
    typer.echo(f"Restored backup {backup_id} as #{new_id}.")


@cli.command("reset-history")
def reset_history() -> None:
    """Forget every recorded merge decision."""

    services = _load_services()
    with _cli_errors():
        removed = services.history.reset()
    typer.echo(f"Removed {removed} merge decisions.")


if __name__ == "__main__":
    cli()
