"""access_import.file_processor

Processing unit for one staged upload.

Flow:
  1. Pick a decoder from the declared file name (.csv or .xlsx); anything
     else is rejected before the file is read.
  2. Decode into header-keyed row mappings; reject the file outright when it
     has more than max_rows rows.
  3. Fan every row out to the RowReconciler on a thread pool and emit one
     progress event per completed row (completion order, not file order).
  4. Emit exactly one terminal event: "Done!" with the ImportReport, or the
     combined row errors (with the report of what was written anyway).

File-level failures surface as a single terminal status string.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from access_import.reconcile import Row, RowReconciler
from access_import.shared import (
    DecodeError,
    Emit,
    FileTooLargeError,
    ImportFileError,
    ImportReport,
    ProcessResult,
    StatusUpdate,
    UnsupportedFormatError,
    normalize_headers,
)

log = logging.getLogger(__name__)

MAX_ROWS = 10_000
PROCESSING_STATUS = "Processing..."
DONE_STATUS = "Done!"
FILE_ERRORS_STATUS = "File contains errors. Please fix them and try again."


@dataclass(frozen=True)
class StagedFile:
    """An uploaded file persisted under a generated name.

    file_name is the client-declared name, used for format dispatch and
    labeling only.
    """

    file_name: str
    path: Path
    file_size: int | None = None


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

def decode_csv(data: bytes) -> list[dict[str, Any]]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"Could not read CSV file: {exc}") from exc
    reader = csv.DictReader(io.StringIO(text, newline=""))
    try:
        return [normalize_headers(raw) for raw in reader]
    except csv.Error as exc:
        raise DecodeError(f"Could not read CSV file: {exc}") from exc


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def decode_xlsx(data: bytes) -> list[dict[str, Any]]:
    """Rows of the first worksheet keyed by the first row; blank rows skipped."""
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise DecodeError(f"Could not read workbook: {exc}") from exc
    try:
        if not workbook.worksheets:
            return []
        values = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(values, None)
        if header is None:
            return []
        keys = [str(h).strip() if h is not None else None for h in header]
        rows = []
        for cells in values:
            if all(_blank(c) for c in cells):
                continue
            rows.append(normalize_headers(dict(zip(keys, cells))))
        return rows
    finally:
        workbook.close()


DECODERS: dict[str, Callable[[bytes], list[dict[str, Any]]]] = {
    "csv": decode_csv,
    "xlsx": decode_xlsx,
}


def file_extension(file_name: str) -> str:
    return file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""


def decode_file(file_name: str, path: Path) -> list[dict[str, Any]]:
    decoder = DECODERS.get(file_extension(file_name))
    if decoder is None:
        raise UnsupportedFormatError("Unsupported file format.")
    return decoder(path.read_bytes())


# ---------------------------------------------------------------------------
# FileProcessor
# ---------------------------------------------------------------------------

class FileProcessor:
    """Runs one staged file through the reconciler and reports via emit.

    row_workers bounds concurrent rows; None runs every row at once.
    """

    def __init__(
        self,
        reconciler: RowReconciler,
        max_rows: int = MAX_ROWS,
        row_workers: int | None = 32,
    ) -> None:
        self._reconciler = reconciler
        self._max_rows = max_rows
        self._row_workers = row_workers

    def process(self, staged: StagedFile, emit: Emit) -> StatusUpdate:
        """Process the file, emit progress and the terminal event, return the latter."""
        try:
            final = self._run(staged, emit)
        except ImportFileError as exc:
            log.warning("File %s rejected: %s", staged.file_name, exc)
            final = StatusUpdate(staged.file_name, status=str(exc), terminal=True)
        emit(final)
        return final

    def _run(self, staged: StagedFile, emit: Emit) -> StatusUpdate:
        rows = decode_file(staged.file_name, staged.path)
        if len(rows) > self._max_rows:
            raise FileTooLargeError(
                "File contains too many entries. "
                f"The maximum allowed is {self._max_rows:,}."
            )
        log.info("Processing %d rows from %s", len(rows), staged.file_name)

        results = self.reconcile_rows(staged.file_name, rows, emit)
        report = ImportReport.from_results(results)
        errors = [r.error for r in results if not r.ok]
        if errors:
            return StatusUpdate(
                staged.file_name,
                status="\n".join([FILE_ERRORS_STATUS, *errors]),
                report=report,
                terminal=True,
            )
        return StatusUpdate(staged.file_name, status=DONE_STATUS, report=report, terminal=True)

    def reconcile_rows(
        self, file_name: str, rows: list[dict[str, Any]], emit: Emit
    ) -> list[ProcessResult]:
        """Reconcile all rows concurrently; results come back in file order."""
        total = len(rows)
        if total == 0:
            return []
        parsed = [Row.from_mapping(raw) for raw in rows]
        results: list[ProcessResult] = [ProcessResult.failed("not processed")] * total
        workers = min(self._row_workers or total, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="row") as pool:
            futures = {
                pool.submit(self._reconcile_one, file_name, idx, row): idx
                for idx, row in enumerate(parsed)
            }
            for done, future in enumerate(as_completed(futures), start=1):
                result = future.result()
                results[futures[future]] = result
                emit(StatusUpdate(
                    file_name,
                    status=PROCESSING_STATUS if result.ok else result.error,
                    progress=round(done / total * 100, 2),
                ))
        return results

    def _reconcile_one(self, file_name: str, idx: int, row: Row) -> ProcessResult:
        try:
            return self._reconciler.reconcile(file_name, row)
        except Exception as exc:
            log.exception("Row %d of %s failed", idx + 1, file_name)
            return ProcessResult.failed(
                f"Failed to save row {idx + 1} in file {file_name}: {exc}"
            )
