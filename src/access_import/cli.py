"""access_import.cli

Command-line entrypoint.

Usage:
    access-import serve --config config/access_import.yml
    access-import import-file people.csv --db-dsn "$DB_DSN" --row-delay 0
    access-import load-disposable-domains disposable.txt --db-dsn "$DB_DSN"
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click

from access_import.config import Settings, SettingsError, load_settings
from access_import.directory import DirectoryRepository, InMemoryDirectory
from access_import.domain_check import DisposableDomains, DomainValidator
from access_import.file_processor import DONE_STATUS, PROCESSING_STATUS, StagedFile
from access_import.pg_directory import PgDirectory
from access_import.server import build_processor, create_app, load_disposable_domains
from access_import.shared import StatusUpdate, write_run_report


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_path: str | None, **overrides) -> Settings:
    try:
        settings = load_settings(Path(config_path) if config_path else None)
    except SettingsError as exc:
        raise click.ClickException(str(exc)) from exc
    return settings.replace(**overrides)


@click.group()
def cli() -> None:
    """Personnel file import service."""


@cli.command()
@click.option("--config", "config_path", default=None, type=click.Path(exists=True), help="YAML settings file")
@click.option("--host", default=None)
@click.option("--port", default=None, type=int)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (omit for in-memory directory)")
@click.option("--upload-dir", default=None, type=click.Path(path_type=Path))
@click.option("--row-delay", default=None, type=float, help="Seconds to pause before each row")
def serve(
    config_path: str | None,
    host: str | None,
    port: int | None,
    db_dsn: str | None,
    upload_dir: Path | None,
    row_delay: float | None,
) -> None:
    """Run the WebSocket upload server."""
    import uvicorn

    settings = _load(
        config_path, host=host, port=port, db_dsn=db_dsn,
        upload_dir=upload_dir, row_delay_seconds=row_delay,
    )
    _configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


@cli.command("import-file")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_path", default=None, type=click.Path(exists=True), help="YAML settings file")
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (omit for in-memory directory)")
@click.option("--row-delay", default=0.0, type=float, show_default=True)
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path(path_type=Path))
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def import_file(
    file_path: Path,
    config_path: str | None,
    db_dsn: str | None,
    row_delay: float,
    report_dir: Path,
    run_id: str | None,
) -> None:
    """Process one file offline through the same pipeline as the server."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    settings = _load(config_path, db_dsn=db_dsn, row_delay_seconds=row_delay)
    _configure_logging(settings.log_level)

    directory: DirectoryRepository
    pg: PgDirectory | None = None
    if settings.db_dsn:
        directory = pg = PgDirectory(settings.db_dsn, max_size=settings.pool_size(units=1))
    else:
        click.echo(f"[{run_id}] No --db-dsn given; using an in-memory directory (nothing is persisted)")
        directory = InMemoryDirectory()

    row_errors: list[str] = []

    def emit(event: StatusUpdate) -> None:
        if event.terminal:
            return
        if event.status and event.status != PROCESSING_STATUS:
            row_errors.append(event.status)
            click.echo(f"[{run_id}] {event.progress:6.2f}% {event.status}", err=True)
        else:
            click.echo(f"[{run_id}] {event.progress:6.2f}%")

    try:
        checker = DomainValidator(
            load_disposable_domains(settings, directory),
            lifetime=settings.dns_lifetime_seconds,
        )
        processor = build_processor(settings, directory, checker)
        click.echo(f"[{run_id}] Starting import of {file_path}")
        final = processor.process(StagedFile(file_path.name, file_path), emit)
    finally:
        if pg is not None:
            pg.close()

    report_path = write_run_report(
        report_dir, run_id, started_at, str(file_path), final, row_errors,
    )
    summary = final.report.to_dict() if final.report else {}
    click.echo(f"[{run_id}] Report written to {report_path}")
    if final.status != DONE_STATUS:
        click.echo(f"[{run_id}] FAILED: {final.status}", err=True)
        click.echo(f"[{run_id}] {summary}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done: {summary}")


@cli.command("load-disposable-domains")
@click.argument("domains_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
def load_disposable_domains_command(domains_path: Path, db_dsn: str) -> None:
    """Load a disposable-domain list (one domain per line) into the directory."""
    domains = DisposableDomains.from_file(domains_path)
    pg = PgDirectory(db_dsn, max_size=1)
    try:
        inserted = pg.add_disposable_domains(domains)
    finally:
        pg.close()
    click.echo(f"{len(domains)} domains read, {inserted} new")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
