"""Unit test fixtures.

``MemoryMemberStore`` mirrors the ``member`` / ``app_user`` tables closely
enough for the service and import code: defaults, the CHECK constraints,
the partial unique indexes and savepoint rollback.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Mapping

import pytest

from members_etl.normalize import ALLOWED_NEIGHBORHOODS
from members_etl.store import WRITABLE_COLUMNS, check_columns

_DEFAULTS = {
    "status": "active",
    "member_type": "active",
    "member_of_regional_bodies": False,
    "assigned_mission": False,
}


class ConstraintViolation(Exception):
    pass


class MemoryMemberStore:
    def __init__(self) -> None:
        self.members: dict[int, dict[str, Any]] = {}
        self.users: dict[int, dict[str, Any]] = {}
        self._next_id = 1
        self.fail_on: set[str] = set()

    # -- helpers ------------------------------------------------------------

    @contextmanager
    def transaction(self):
        snapshot = (copy.deepcopy(self.members), copy.deepcopy(self.users), self._next_id)
        try:
            yield self
        except BaseException:
            self.members, self.users, self._next_id = snapshot
            raise

    def _check(self, row: Mapping[str, Any], member_id: int | None) -> None:
        if not row.get("full_name"):
            raise ConstraintViolation('null value in column "full_name"')
        if row.get("gender") not in (None, "M", "F"):
            raise ConstraintViolation("member_gender_check")
        if row.get("status") not in ("active", "inactive"):
            raise ConstraintViolation("member_status_check")
        if row.get("neighborhood") not in (None, *ALLOWED_NEIGHBORHOODS):
            raise ConstraintViolation("member_neighborhood_check")
        mid = row.get("membership_id")
        if mid is not None and not isinstance(mid, int):
            raise ConstraintViolation(f"invalid input syntax for type bigint: {mid!r}")
        for column in ("membership_id", "cin"):
            value = row.get(column)
            if value is None:
                continue
            for other in self.members.values():
                if other["id"] != member_id and other.get(column) == value:
                    raise ConstraintViolation(f"duplicate key value violates unique constraint on {column}")

    def _ordered(self) -> list[dict[str, Any]]:
        return [self.members[k] for k in sorted(self.members)]

    def _matches(self, row, filters, search, joined_before) -> bool:
        for column, value in (filters or {}).items():
            if row.get(column) != value:
                return False
        if search and search.lower() not in (row.get("full_name") or "").lower():
            return False
        if joined_before is not None:
            if row.get("joined_at") is None or not row["joined_at"] < joined_before:
                return False
        return True

    # -- lookups ------------------------------------------------------------

    def find_one(self, column, value, *, case_insensitive=False):
        check_columns([column])
        for row in self._ordered():
            stored = row.get(column)
            if stored is None:
                continue
            if case_insensitive:
                if str(stored).lower() == str(value).lower():
                    return dict(row)
            elif stored == value:
                return dict(row)
        return None

    def find_by_id(self, member_id):
        row = self.members.get(member_id)
        return dict(row) if row else None

    def count(self, filters=None, search=None, joined_before=None):
        return sum(1 for r in self._ordered() if self._matches(r, filters, search, joined_before))

    def find_many(self, filters=None, search=None, sort="full_name", descending=False, offset=0, limit=None):
        check_columns([sort])
        rows = [dict(r) for r in self._ordered() if self._matches(r, filters, search, None)]
        with_value = [r for r in rows if r.get(sort) is not None]
        without = [r for r in rows if r.get(sort) is None]
        with_value.sort(key=lambda r: r[sort], reverse=descending)
        rows = with_value + without
        end = None if limit is None else offset + limit
        return rows[offset:end]

    # -- writes -------------------------------------------------------------

    def create(self, values):
        check_columns(values, WRITABLE_COLUMNS)
        if "create" in self.fail_on:
            raise ConstraintViolation("create failed")
        row = {c: None for c in WRITABLE_COLUMNS}
        row.update(_DEFAULTS)
        row.update(values)
        self._check(row, None)
        now = datetime.now(timezone.utc)
        row.update(id=self._next_id, created_at=now, updated_at=now)
        self._next_id += 1
        self.members[row["id"]] = row
        return dict(row)

    def update(self, member_id, values):
        check_columns(values, WRITABLE_COLUMNS)
        if member_id not in self.members:
            return None
        row = {**self.members[member_id], **values}
        self._check(row, member_id)
        row["updated_at"] = datetime.now(timezone.utc)
        self.members[member_id] = row
        return dict(row)

    def delete(self, member_id):
        row = self.members.pop(member_id, None)
        for user in self.users.values():
            if row and user.get("member_id") == member_id:
                user["member_id"] = None
        return row

    def delete_many(self, filters=None, joined_before=None):
        doomed = [r["id"] for r in self._ordered() if self._matches(r, filters, None, joined_before)]
        for member_id in doomed:
            self.delete(member_id)
        return len(doomed)

    def clear_blank_cin(self):
        cleared = 0
        for row in self.members.values():
            if isinstance(row.get("cin"), str) and not row["cin"].strip():
                row["cin"] = None
                cleared += 1
        return cleared

    # -- linked users -------------------------------------------------------

    def add_user(self, username: str, role: str = "viewer", member_id: int | None = None) -> dict[str, Any]:
        user_id = len(self.users) + 1
        self.users[user_id] = {"id": user_id, "username": username, "role": role, "member_id": member_id}
        return dict(self.users[user_id])

    def find_linked_user(self, member_id):
        if "find_linked_user" in self.fail_on:
            raise ConstraintViolation("users table unavailable")
        for user_id in sorted(self.users):
            if self.users[user_id].get("member_id") == member_id:
                return dict(self.users[user_id])
        return None

    def set_user_role(self, user_id, role):
        if "set_user_role" in self.fail_on:
            raise ConstraintViolation("app_user_role_chk")
        if user_id not in self.users:
            return None
        self.users[user_id]["role"] = role
        return dict(self.users[user_id])


class RecordingAuditSink:
    def __init__(self, fail: bool = False) -> None:
        self.entries: list[dict[str, Any]] = []
        self.fail = fail

    def record(self, actor, action, entity_type, entity_id, before, after):
        if self.fail:
            raise RuntimeError("audit table unavailable")
        self.entries.append({
            "actor": actor,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "before": before,
            "after": after,
        })


@pytest.fixture
def store():
    return MemoryMemberStore()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def failing_audit():
    return RecordingAuditSink(fail=True)
