"""access_import.server

FastAPI application: one WebSocket upload session per connection.

Run with:
    access-import serve --config config/access_import.yml
or
    uvicorn access_import.server:app
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, WebSocket

from access_import.config import Settings, load_settings
from access_import.directory import DirectoryRepository, InMemoryDirectory
from access_import.domain_check import DisposableDomains, DomainValidator
from access_import.file_processor import FileProcessor
from access_import.pg_directory import PgDirectory
from access_import.reconcile import EmailDomainChecker, KeyedLocks, RowReconciler
from access_import.upload_session import UploadSession

log = logging.getLogger(__name__)


def load_disposable_domains(settings: Settings, directory: DirectoryRepository) -> DisposableDomains:
    domains = DisposableDomains()
    if settings.disposable_domains_path is not None:
        domains = DisposableDomains.from_file(settings.disposable_domains_path)
    if isinstance(directory, PgDirectory):
        domains = domains.union(directory.disposable_domains())
    log.info("Loaded %d disposable domains", len(domains))
    return domains


def build_processor(
    settings: Settings,
    directory: DirectoryRepository,
    checker: EmailDomainChecker,
) -> FileProcessor:
    reconciler = RowReconciler(
        directory,
        checker,
        row_delay=settings.row_delay_seconds,
        locks=KeyedLocks() if settings.serialize_rows else None,
    )
    return FileProcessor(
        reconciler,
        max_rows=settings.max_rows,
        row_workers=settings.row_workers or None,
    )


def create_app(
    settings: Settings,
    directory: DirectoryRepository | None = None,
    checker: EmailDomainChecker | None = None,
) -> FastAPI:
    """Build the app.  directory/checker override the configured ones (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned: PgDirectory | None = None
        repo = directory
        if repo is None:
            if settings.db_dsn:
                repo = owned = PgDirectory(settings.db_dsn, max_size=settings.pool_size())
            else:
                log.warning("No db_dsn configured; using the in-memory directory")
                repo = InMemoryDirectory()
        domain_checker = checker
        if domain_checker is None:
            domain_checker = DomainValidator(
                load_disposable_domains(settings, repo),
                lifetime=settings.dns_lifetime_seconds,
            )
        settings.upload_dir.mkdir(parents=True, exist_ok=True)

        app.state.directory = repo
        app.state.processor = build_processor(settings, repo, domain_checker)
        app.state.executor = ThreadPoolExecutor(
            max_workers=settings.unit_workers, thread_name_prefix="unit"
        )
        log.info("Upload server ready (upload_dir=%s)", settings.upload_dir)
        try:
            yield
        finally:
            await asyncio.to_thread(app.state.executor.shutdown, True)
            if owned is not None:
                owned.close()

    app = FastAPI(title="access-import", lifespan=lifespan)

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {"status": "ok"}

    @app.websocket("/")
    async def upload_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        session = UploadSession(
            send=websocket.send_json,
            run_unit=app.state.processor.process,
            executor=app.state.executor,
            upload_dir=settings.upload_dir,
            keep_uploads=settings.keep_uploads,
        )
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                payload = message.get("bytes")
                if payload is None:
                    payload = message.get("text")
                if payload is not None:
                    await session.receive(payload)
        finally:
            session.close()
            log.debug("Upload connection closed")

    return app


def __getattr__(name: str) -> Any:
    # `uvicorn access_import.server:app` builds the app from the environment.
    if name == "app":
        return create_app(load_settings())
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
