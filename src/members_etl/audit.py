"""members_etl.audit

Audit trail for member and user changes.

Audit writes are advisory: every call site goes through ``record_audit``,
which logs and swallows failures so the surrounding create/update/delete
still succeeds.
"""

from __future__ import annotations

import json
import logging
from functools import partial
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

log = logging.getLogger(__name__)

VALID_ACTIONS = frozenset({"create", "update", "delete"})

_dumps = partial(json.dumps, default=str, ensure_ascii=False)


class AuditSink(Protocol):
    def record(
        self,
        actor: str | None,
        action: str,
        entity_type: str,
        entity_id: Any,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None: ...


class PostgresAuditSink:
    """Write audit rows to ``audit_log`` inside their own savepoint.

    A failed insert rolls back only the savepoint, leaving the caller's
    transaction usable.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def record(
        self,
        actor: str | None,
        action: str,
        entity_type: str,
        entity_id: Any,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        if action not in VALID_ACTIONS:
            raise ValueError(f"Invalid audit action {action!r}")
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO audit_log
                  (actor, action, entity_type, entity_id, before_json, after_json)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    actor,
                    action,
                    entity_type,
                    None if entity_id is None else str(entity_id),
                    None if before is None else Jsonb(before, dumps=_dumps),
                    None if after is None else Jsonb(after, dumps=_dumps),
                ),
            )


class NullAuditSink:
    """Discard audit entries (dry runs, unit tests)."""

    def record(self, *args: Any, **kwargs: Any) -> None:
        return None


def record_audit(
    sink: AuditSink | None,
    actor: str | None,
    action: str,
    entity_type: str,
    entity_id: Any,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> bool:
    """Record one audit entry; return False (and log) instead of raising."""
    if sink is None:
        return False
    try:
        sink.record(actor, action, entity_type, entity_id, before, after)
    except Exception as exc:  # noqa: BLE001
        log.error(
            "Audit write failed (%s %s id=%s): %s", action, entity_type, entity_id, exc
        )
        return False
    return True
