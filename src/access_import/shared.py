"""access_import.shared

Types shared by the upload session, the processing unit and the row
reconciler: file-level exceptions, per-row outcomes, the import report,
the single STATUS_UPDATE message shape, and run-report writing.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

STATUS_UPDATE = "STATUS_UPDATE"
INIT_UPLOAD = "INIT_UPLOAD"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportFileError(Exception):
    """A failure that aborts processing of a whole file.

    The message is shown to the client verbatim as a terminal status.
    """


class FileTooLargeError(ImportFileError):
    """Raised when a decoded file has more rows than the configured maximum."""


class UnsupportedFormatError(ImportFileError):
    """Raised when the file extension has no decoder."""


class DecodeError(ImportFileError):
    """Raised when a supported file cannot be decoded into rows."""


class TransportError(ImportFileError):
    """Raised when uploaded bytes could not be staged."""


class WorkerFault(ImportFileError):
    """Raised when a processing unit dies before emitting a terminal event."""


class RowValidationError(Exception):
    """One or more per-row checks failed."""

    def __init__(self, file_label: str, errors: list[str]) -> None:
        self.file_label = file_label
        self.errors = list(errors)
        super().__init__(
            f"Validation error in file {file_label}: {', '.join(self.errors)}"
        )


# ---------------------------------------------------------------------------
# Per-row outcome
# ---------------------------------------------------------------------------

class RowStatus(str, enum.Enum):
    ERROR = "ERROR"
    CREATE = "CREATE"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class ProcessResult:
    status: RowStatus
    error: str | None = None
    invites: int = 0

    @classmethod
    def failed(cls, message: str) -> ProcessResult:
        return cls(RowStatus.ERROR, error=message)

    @property
    def ok(self) -> bool:
        return self.status is not RowStatus.ERROR


# ---------------------------------------------------------------------------
# ImportReport
# ---------------------------------------------------------------------------

@dataclass
class ImportReport:
    records_created: int = 0
    records_updated: int = 0
    credential_count: int = 0

    @classmethod
    def from_results(cls, results: Iterable[ProcessResult]) -> ImportReport:
        report = cls()
        for result in results:
            if result.status is RowStatus.CREATE:
                report.records_created += 1
            elif result.status is RowStatus.UPDATE:
                report.records_updated += 1
            else:
                continue
            report.credential_count += result.invites
        return report

    def to_dict(self) -> dict[str, int]:
        return {
            "recordsCreated": self.records_created,
            "recordsUpdated": self.records_updated,
            "credentialCount": self.credential_count,
        }


# ---------------------------------------------------------------------------
# STATUS_UPDATE message
# ---------------------------------------------------------------------------

@dataclass
class StatusUpdate:
    """Server → client message.  Every lifecycle event uses this shape.

    `terminal` marks the last event of a processing unit and is not sent.
    """

    file_name: str
    status: str | None = None
    progress: float | None = None
    file_size: int | None = None
    report: ImportReport | None = None
    terminal: bool = field(default=False, compare=False)

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"action": STATUS_UPDATE, "fileName": self.file_name}
        if self.file_size is not None:
            message["fileSize"] = self.file_size
        if self.status is not None:
            message["status"] = self.status
        if self.progress is not None:
            message["progress"] = self.progress
        if self.report is not None:
            message["report"] = self.report.to_dict()
        return message


Emit = Callable[[StatusUpdate], None]


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[Any, Any]) -> dict[str, Any]:
    """Return a new dict with header keys whitespace-stripped.

    Columns without a header (None keys from DictReader overflow, blank
    workbook header cells) are dropped.
    """
    return {str(k).strip(): v for k, v in raw.items() if k is not None and str(k).strip()}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    report_dir: Path,
    run_id: str,
    started_at: str,
    file_path: str,
    final: StatusUpdate,
    errors: list[str],
) -> Path:
    body = {
        "run_id": run_id,
        "file": file_path,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "status": final.status,
        "report": final.report.to_dict() if final.report else None,
        "errors": errors,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(body, indent=2, default=str))
    return report_path
