"""members_etl.cli

Unified CLI entrypoint for member maintenance.

Modes (--mode):
  members_import     : import an .xlsx member workbook (default)
  cleanup_empty_cin  : null out national IDs stored as blank strings
  bulk_delete        : delete members by type / status / join date

Usage (members_import):
    members-etl \\
        --mode members_import \\
        --db-dsn "$MEMBERS_DB_DSN" \\
        --xlsx-path "rawEvidence/members_2024.xlsx" \\
        --import-mode upsert \\
        --actor "secretary@example.org"

Usage (bulk_delete):
    members-etl --mode bulk_delete --status inactive --before-joined 2015-01-01

The whole run is one transaction; each imported row is a savepoint inside
it. --dry-run rolls the transaction back.
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import psycopg

from members_etl.audit import AuditSink, NullAuditSink, PostgresAuditSink
from members_etl.config import Settings, SettingsValidationError, load_settings
from members_etl.identity import ImportMode
from members_etl.import_members import handle_members_import
from members_etl.members import BulkDeleteFilters, MemberFilterError, delete_members
from members_etl.normalize import Recognized, parse_membership_date
from members_etl.shared import write_run_report
from members_etl.store import ConfigError, MemberDatabase, PostgresMemberStore

log = logging.getLogger(__name__)


class _FatalRunError(Exception):
    """Aborts the run; the message is shown to the operator."""


def _fail(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] ERROR: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _members_import(
    run_id: str,
    store: PostgresMemberStore,
    audit: AuditSink,
    settings: Settings,
    data: bytes,
    import_mode: str | None,
    sheet: str | None,
    actor: str | None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    mode = ImportMode.parse(import_mode) if import_mode else settings.default_import_mode
    response = handle_members_import(
        data, mode, store, audit, actor,
        sheet_name=sheet, max_rows=settings.max_import_rows,
    )
    if response.status_code != 200:
        raise _FatalRunError(response.body["message"])
    results = response.body["results"]
    click.echo(
        f"[{run_id}] rows={response.body['rows']} created={results['created']} "
        f"updated={results['updated']} failed={results['failed']}"
    )
    for err in results["errors"]:
        click.echo(f"[{run_id}]   row {err['row']}: {err['message']}")
    return {"import_mode": mode.value}, results


def _cleanup_empty_cin(run_id: str, store: PostgresMemberStore) -> dict[str, Any]:
    cleared = store.clear_blank_cin()
    click.echo(f"[{run_id}] Cleared blank cin on {cleared} member(s)")
    return {"cleared": cleared}


def _bulk_delete(
    run_id: str,
    store: PostgresMemberStore,
    audit: AuditSink,
    filters: BulkDeleteFilters,
    confirm: bool,
    actor: str | None,
) -> dict[str, Any]:
    try:
        deleted = delete_members(store, filters, confirm, audit, actor)
    except MemberFilterError as exc:
        raise _FatalRunError(str(exc)) from exc
    click.echo(f"[{run_id}] Deleted {deleted} member(s)")
    return {"deleted_count": deleted}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    type=click.Choice(["members_import", "cleanup_empty_cin", "bulk_delete"]),
    default="members_import",
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", envvar="MEMBERS_DB_DSN", default=None, help="PostgreSQL DSN (or MEMBERS_DB_DSN)")
@click.option("--settings-file", default=None, type=click.Path(), help="YAML settings file")
@click.option("--xlsx-path", default=None, type=click.Path(), help="[members_import] Input workbook")
@click.option("--sheet", default=None, help="[members_import] Sheet name (default: first sheet)")
@click.option("--import-mode", default=None, help="[members_import] upsert | append | skip")
@click.option("--actor", default=None, help="Recorded as the actor on audit entries")
@click.option("--member-type", default=None, help="[bulk_delete] Filter on member type")
@click.option("--status", default=None, help="[bulk_delete] Filter on status")
@click.option("--before-joined", default=None, help="[bulk_delete] Only members who joined before this date")
@click.option("--confirm", is_flag=True, default=False, help="[bulk_delete] Allow deleting with no filter")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    db_dsn: str | None,
    settings_file: str | None,
    xlsx_path: str | None,
    sheet: str | None,
    import_mode: str | None,
    actor: str | None,
    member_type: str | None,
    status: str | None,
    before_joined: str | None,
    confirm: bool,
    dry_run: bool,
    run_id: str | None,
) -> None:
    """Member import and maintenance CLI."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        settings = load_settings(Path(settings_file) if settings_file else None)
    except (SettingsValidationError, FileNotFoundError) as exc:
        _fail(run_id, f"settings: {exc}")
        return

    try:
        database = MemberDatabase(db_dsn) if db_dsn else MemberDatabase.from_env()
    except ConfigError as exc:
        _fail(run_id, str(exc))
        return

    # Validate mode-specific flags before touching the database.
    data = b""
    filters = BulkDeleteFilters()
    sources: dict[str, Any] = {}
    if mode == "members_import":
        if not xlsx_path:
            _fail(run_id, "--xlsx-path is required for members_import")
            return
        try:
            data = Path(xlsx_path).read_bytes()
        except OSError as exc:
            _fail(run_id, f"could not read {xlsx_path}: {exc}")
            return
        sources["xlsx_path"] = xlsx_path
    elif mode == "bulk_delete":
        joined_before = None
        if before_joined:
            parsed = parse_membership_date(before_joined)
            if not isinstance(parsed, Recognized):
                _fail(run_id, f"could not parse --before-joined {before_joined!r}")
                return
            joined_before = parsed.value
        filters = BulkDeleteFilters(member_type=member_type, status=status, joined_before=joined_before)
        sources.update(member_type=member_type, status=status, before_joined=before_joined)

    try:
        with database:
            conn = database.connect()
            store = PostgresMemberStore(conn)
            audit: AuditSink = NullAuditSink() if dry_run else PostgresAuditSink(conn)
            with conn.transaction():
                if mode == "members_import":
                    extra, results = _members_import(
                        run_id, store, audit, settings, data, import_mode, sheet, actor
                    )
                    sources.update(extra)
                elif mode == "cleanup_empty_cin":
                    results = _cleanup_empty_cin(run_id, store)
                else:
                    results = _bulk_delete(run_id, store, audit, filters, confirm, actor)
                if dry_run:
                    raise psycopg.Rollback()
            click.echo(f"[{run_id}] {'DRY RUN, rolled back.' if dry_run else 'Committed.'}")
    except _FatalRunError as exc:
        _fail(run_id, str(exc))
        return

    report_path = write_run_report(
        run_id, started_at, mode, dry_run, sources, results,
        reports_dir=settings.reports_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
