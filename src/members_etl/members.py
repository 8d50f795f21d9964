"""members_etl.members

Single-record member operations behind the back-office forms.

Unlike the spreadsheet import, this path passes unrecognized gender and
status tokens through so the database constraints reject them with a
visible error.

Side effects after a successful write are advisory and never fail the
operation: audit entries, promoting a linked account to 'responsible',
and deleting a replaced or orphaned photo upload.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from members_etl.audit import AuditSink, record_audit
from members_etl.normalize import normalize_member_input
from members_etl.store import MemberStore
from members_etl.uploads import safe_unlink

log = logging.getLogger(__name__)

ENTITY_TYPE = "Member"
BULK_ENTITY_TYPE = "MemberBulk"
USER_ENTITY_TYPE = "User"

SORTABLE_COLUMNS = frozenset({
    "full_name",
    "membership_id",
    "joined_at",
    "status",
    "member_type",
    "phone",
    "created_at",
    "id",
    "gender",
    "education_level",
})
FILTERABLE_COLUMNS = frozenset({"gender", "education_level", "member_type"})

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

# Account roles that outrank 'responsible' and are never downgraded.
PRIVILEGED_ROLES = frozenset({"admin", "secretary"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MemberNotFoundError(LookupError):
    """Raised when no member exists with the given id."""


class MemberValidationError(ValueError):
    """Raised when form input cannot produce a valid member."""


class MemberFilterError(ValueError):
    """Raised when a bulk delete has neither filters nor confirmation."""


# ---------------------------------------------------------------------------
# Linked account role sync
# ---------------------------------------------------------------------------

def sync_linked_user_role(
    store: MemberStore,
    member: Mapping[str, Any],
    audit: AuditSink | None,
    actor: str | None,
) -> bool:
    """Give the account linked to a member holding a role the 'responsible' role.

    Returns True when an account was changed. Failures are logged only.
    """
    if not member.get("role"):
        return False
    try:
        with store.transaction():
            user = store.find_linked_user(member["id"])
            if user is None or user.get("role") in PRIVILEGED_ROLES or user.get("role") == "responsible":
                return False
            updated = store.set_user_role(user["id"], "responsible")
    except Exception as exc:  # noqa: BLE001
        log.error("Failed to sync member role to linked user (member=%s): %s", member.get("id"), exc)
        return False
    record_audit(audit, actor, "update", USER_ENTITY_TYPE, user["id"], user, updated)
    return True


def _cleanup_photo(photo_url: str | None, public_root: Path | None) -> None:
    if not photo_url or public_root is None:
        return
    result = safe_unlink(photo_url, public_root)
    if result.removed:
        log.info("Removed upload: %s", photo_url)
    else:
        log.info("Upload %s not removed (%s)", photo_url, result.value)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def create_member(
    store: MemberStore,
    raw: Mapping[str, Any],
    audit: AuditSink | None = None,
    actor: str | None = None,
) -> dict[str, Any]:
    """Create a member from form input. A membership date is required."""
    payload = normalize_member_input(raw)
    if not payload.joined_at:
        raise MemberValidationError("A membership date is required when adding a member.")
    member = store.create(payload.non_empty())
    record_audit(audit, actor, "create", ENTITY_TYPE, member["id"], None, member)
    sync_linked_user_role(store, member, audit, actor)
    return member


def update_member(
    store: MemberStore,
    member_id: int,
    raw: Mapping[str, Any],
    audit: AuditSink | None = None,
    actor: str | None = None,
    public_root: Path | None = None,
) -> dict[str, Any]:
    """Apply form input to a member.

    Keys missing from the form leave stored values alone; a blank
    membership date or national ID is ignored rather than clearing history.
    """
    before = store.find_by_id(member_id)
    if before is None:
        raise MemberNotFoundError(f"Member {member_id} not found")
    payload = normalize_member_input(raw)
    member = store.update(member_id, payload.present())
    if member is None:
        raise MemberNotFoundError(f"Member {member_id} not found")
    record_audit(audit, actor, "update", ENTITY_TYPE, member["id"], before, member)
    sync_linked_user_role(store, member, audit, actor)

    if before.get("photo_url") and before["photo_url"] != member.get("photo_url"):
        _cleanup_photo(before["photo_url"], public_root)
    return member


def delete_member(
    store: MemberStore,
    member_id: int,
    audit: AuditSink | None = None,
    actor: str | None = None,
    public_root: Path | None = None,
) -> dict[str, Any]:
    member = store.delete(member_id)
    if member is None:
        raise MemberNotFoundError(f"Member {member_id} not found")
    record_audit(audit, actor, "delete", ENTITY_TYPE, member["id"], member, None)
    _cleanup_photo(member.get("photo_url"), public_root)
    return member


@dataclass
class BulkDeleteFilters:
    member_type: str | None = None
    status: str | None = None
    joined_before: datetime | None = None

    def equality(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.member_type:
            out["member_type"] = self.member_type
        if self.status:
            out["status"] = self.status
        return out

    def is_empty(self) -> bool:
        return not self.equality() and self.joined_before is None


def delete_members(
    store: MemberStore,
    filters: BulkDeleteFilters,
    confirm: bool = False,
    audit: AuditSink | None = None,
    actor: str | None = None,
) -> int:
    """Delete every member matching filters; no filters requires confirm=True."""
    if filters.is_empty() and not confirm:
        raise MemberFilterError(
            "Specify at least one filter or set confirm=true to delete all members."
        )
    deleted = store.delete_many(filters.equality(), filters.joined_before)
    record_audit(
        audit, actor, "delete", BULK_ENTITY_TYPE, None,
        {"filters": {**filters.equality(), "joined_before": filters.joined_before}},
        {"deleted_count": deleted},
    )
    log.info("Bulk delete removed %d member(s)", deleted)
    return deleted


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

@dataclass
class MemberPage:
    members: list[dict[str, Any]]
    page: int
    page_size: int
    total_count: int
    total_pages: int
    filters: dict[str, Any] = field(default_factory=dict)


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 1 else default


def list_members(
    store: MemberStore,
    search: str | None = None,
    sort: str | None = None,
    order: str | None = None,
    page: Any = 1,
    size: Any = DEFAULT_PAGE_SIZE,
    filters: Mapping[str, Any] | None = None,
) -> MemberPage:
    """Paginated, searchable member listing.

    Unknown sort columns fall back to full_name; unknown filter keys are
    ignored; the page is clamped to the last page.
    """
    page_size = min(MAX_PAGE_SIZE, _positive_int(size, DEFAULT_PAGE_SIZE))
    sort_column = sort if sort in SORTABLE_COLUMNS else "full_name"
    descending = (order or "").strip().lower() == "desc"
    term = (search or "").strip() or None
    where = {
        k: v for k, v in (filters or {}).items()
        if k in FILTERABLE_COLUMNS and v not in (None, "")
    }

    total = store.count(where, term)
    total_pages = max(1, math.ceil(total / page_size))
    current = min(_positive_int(page, 1), total_pages)
    members = store.find_many(
        where, term, sort_column, descending,
        offset=(current - 1) * page_size, limit=page_size,
    )
    return MemberPage(
        members=members,
        page=current,
        page_size=page_size,
        total_count=total,
        total_pages=total_pages,
        filters=where,
    )
