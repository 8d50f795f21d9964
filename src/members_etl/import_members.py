"""members_etl.import_members

Spreadsheet bulk import of member records.

Processing order per row (each row inside its own savepoint):
  1. map_row                 → wire-keyed field bag; memberType/status default to 'active'
  2. membership date         → ISO 'YYYY-M-D', spreadsheet serial, date cell, or free text
  3. gender                  → 'M' / 'F'; unrecognized tokens dropped
  4. membershipId            → int; non-numeric dropped
  5. cin / phone / text      → cleaned; anything empty afterwards dropped
  6. identity resolution     → create, skip (mode=skip) or sparse merge
Any exception marks the row failed and the loop moves on; no row failure
aborts the batch.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from members_etl.audit import AuditSink, record_audit
from members_etl.identity import ImportMode, resolve_existing_member
from members_etl.normalize import (
    MemberPayload,
    Recognized,
    clean_cin,
    clean_phone,
    is_blank,
    parse_gender,
    parse_import_date,
    parse_membership_id,
    parse_neighborhood,
    parse_status,
)
from members_etl.row_mapper import map_row
from members_etl.shared import ImportRejectedError, ImportResult
from members_etl.spreadsheet import read_workbook
from members_etl.store import MemberStore
from members_etl.uploads import MAX_UPLOAD_BYTES

log = logging.getLogger(__name__)

MAX_IMPORT_ROWS = 1000
ENTITY_TYPE = "Member"
SKIPPED_MESSAGE = "Skipped existing member (mode=skip)"
NO_FILE_MESSAGE = 'No file uploaded. Attach an Excel file using field name "file".'

_IMPORT_TEXT_FIELDS = (
    "fullName",
    "memberType",
    "email",
    "address",
    "role",
    "bio",
    "pdfUrl",
    "photoUrl",
    "occupation",
    "educationLevel",
    "financialCommitment",
)


class RowOutcome(enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Row cleaning
# ---------------------------------------------------------------------------

def _cell_text(value: Any) -> str:
    """Render a cell as text; integral floats lose their '.0'."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_import_payload(row: Mapping[Any, Any]) -> MemberPayload:
    """Map and clean one spreadsheet row.

    Fields that fail their own rule are dropped silently; this never
    raises for bad cell contents.
    """
    bag = map_row(row)
    clean: dict[str, Any] = {}

    for key in _IMPORT_TEXT_FIELDS:
        if key in bag:
            text = _cell_text(bag[key]).strip()
            if text:
                clean[key] = text

    clean.setdefault("memberType", "active")

    status = bag.get("status")
    if is_blank(status):
        clean["status"] = "active"
    else:
        parsed_status = parse_status(status)
        clean["status"] = parsed_status.value if isinstance(parsed_status, Recognized) else status

    # 'membershipDate' headers are mapped onto joinedAt.
    raw_date = bag.get("joinedAt")
    if not is_blank(raw_date):
        joined = parse_import_date(raw_date)
        if isinstance(joined, Recognized):
            clean["joinedAt"] = joined.value

    if "gender" in bag:
        gender = parse_gender(bag["gender"])
        if isinstance(gender, Recognized):
            clean["gender"] = gender.value

    if "membershipId" in bag:
        mid = parse_membership_id(bag["membershipId"])
        if isinstance(mid, Recognized):
            clean["membershipId"] = mid.value

    if "cin" in bag:
        cin = clean_cin(_cell_text(bag["cin"]))
        if cin:
            clean["cin"] = cin

    if "phone" in bag:
        phone = clean_phone(_cell_text(bag["phone"]))
        if phone:
            clean["phone"] = phone

    if "neighborhood" in bag:
        hood = parse_neighborhood(bag["neighborhood"])
        if isinstance(hood, Recognized):
            clean["neighborhood"] = hood.value

    return MemberPayload.from_raw(clean)


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

def _process_row(
    store: MemberStore,
    payload: MemberPayload,
    mode: ImportMode,
    audit: AuditSink | None,
    actor: str | None,
) -> RowOutcome:
    """Create or merge one cleaned row. Caller manages the savepoint."""
    existing = resolve_existing_member(store, payload, mode)

    if existing is None:
        created = store.create(payload.non_empty())
        record_audit(audit, actor, "create", ENTITY_TYPE, created["id"], None, created)
        return RowOutcome.CREATED

    if mode is ImportMode.SKIP:
        return RowOutcome.SKIPPED

    # Sparse merge: blanks never overwrite stored data, and an existing
    # membership number is never renumbered.
    updates = payload.non_empty()
    membership_id = updates.pop("membership_id", None)
    if membership_id is not None and existing.get("membership_id") is None:
        updates["membership_id"] = membership_id

    saved = store.update(existing["id"], updates)
    if saved is None:
        raise LookupError(f"member {existing['id']} disappeared during import")
    record_audit(audit, actor, "update", ENTITY_TYPE, saved["id"], existing, saved)
    return RowOutcome.UPDATED


def run_import(
    rows: Sequence[Mapping[Any, Any]],
    mode: ImportMode,
    store: MemberStore,
    audit: AuditSink | None = None,
    actor: str | None = None,
    max_rows: int = MAX_IMPORT_ROWS,
) -> ImportResult:
    """Import rows in order and return the per-batch summary.

    Raises:
        ImportRejectedError: If there are no rows or more than max_rows.
    """
    if not rows:
        raise ImportRejectedError("No rows found in sheet.")
    if len(rows) > max_rows:
        raise ImportRejectedError(f"Too many rows ({len(rows)}). Limit is {max_rows}.")

    result = ImportResult()
    for idx, row in enumerate(rows):
        row_number = idx + 1
        try:
            with store.transaction():
                payload = build_import_payload(row)
                outcome = _process_row(store, payload, mode, audit, actor)
        except Exception as exc:  # noqa: BLE001
            result.failed += 1
            result.add_error(row_number, str(exc) or exc.__class__.__name__)
            log.warning("Import row %d failed: %s", row_number, exc)
            continue

        if outcome is RowOutcome.CREATED:
            result.created += 1
        elif outcome is RowOutcome.UPDATED:
            result.updated += 1
        else:
            result.add_error(row_number, SKIPPED_MESSAGE)

    log.info(
        "Import finished: created=%d updated=%d failed=%d notes=%d",
        result.created, result.updated, result.failed, len(result.errors),
    )
    return result


# ---------------------------------------------------------------------------
# Upload-facing wrapper
# ---------------------------------------------------------------------------

@dataclass
class ImportResponse:
    status_code: int
    body: dict[str, Any]


def handle_members_import(
    data: bytes | None,
    mode: str | ImportMode | None,
    store: MemberStore,
    audit: AuditSink | None = None,
    actor: str | None = None,
    sheet_name: str | None = None,
    max_rows: int = MAX_IMPORT_ROWS,
) -> ImportResponse:
    """Import an uploaded workbook and shape the response.

    400 for batch-fatal problems, 200 whenever the row loop ran, even if
    every row failed.
    """
    if data is None:
        return ImportResponse(400, {"message": NO_FILE_MESSAGE})
    if len(data) > MAX_UPLOAD_BYTES:
        return ImportResponse(
            400, {"message": f"File too large ({len(data)} bytes). Limit is {MAX_UPLOAD_BYTES} bytes."}
        )

    import_mode = mode if isinstance(mode, ImportMode) else ImportMode.parse(mode)
    try:
        workbook = read_workbook(data)
        rows = workbook.rows(sheet_name)
        result = run_import(rows, import_mode, store, audit, actor, max_rows)
    except ImportRejectedError as exc:
        log.info("Import rejected: %s", exc)
        return ImportResponse(400, {"message": str(exc)})

    return ImportResponse(
        200,
        {"message": "Import completed", "rows": len(rows), "results": result.to_dict()},
    )
