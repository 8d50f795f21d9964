"""members_etl.shared

Shared pieces of the import pipeline: the batch-fatal exception, the
ImportResult accumulator, and run-report writing for the CLI.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportRejectedError(Exception):
    """Raised before any row is processed when a batch cannot be imported.

    Covers: no file, unreadable workbook, no sheet, no rows, too many rows.
    """


# ---------------------------------------------------------------------------
# ImportResult
# ---------------------------------------------------------------------------

@dataclass
class RowError:
    row: int  # 1-based position in the sheet's data rows
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "message": self.message}


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[RowError] = field(default_factory=list)

    def add_error(self, row: int, message: str) -> None:
        self.errors.append(RowError(row=row, message=message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    results: dict[str, Any],
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "results": results,
    }
    report_path = Path(reports_dir) / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str, ensure_ascii=False))
    return report_path
