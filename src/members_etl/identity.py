"""members_etl.identity

Find the stored member an incoming payload represents.

Keys are tried in a fixed order and the first hit wins:
  membership_id → cin → email (case-insensitive) → phone → full_name
  (case-insensitive, exact).
Only keys carrying a value on the payload are tried.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from members_etl.normalize import ABSENT, MemberPayload
from members_etl.store import MemberStore

log = logging.getLogger(__name__)


class ImportMode(enum.Enum):
    UPSERT = "upsert"
    APPEND = "append"
    SKIP = "skip"

    @classmethod
    def parse(cls, value: str | None) -> ImportMode:
        """Case-insensitive; empty or unknown values mean UPSERT."""
        token = (value or "").strip().lower()
        for mode in cls:
            if mode.value == token:
                return mode
        return cls.UPSERT


def _present(value: Any) -> bool:
    return value is not ABSENT and value is not None and value != ""


def resolve_existing_member(
    store: MemberStore,
    payload: MemberPayload,
    mode: ImportMode,
) -> dict[str, Any] | None:
    """Return the stored member matching payload, or None.

    APPEND never matches: the caller always creates and accepts the
    unique-index risk.
    """
    if mode is ImportMode.APPEND:
        return None

    if _present(payload.membership_id):
        found = store.find_one("membership_id", payload.membership_id)
        if found:
            log.debug("Matched member %s by membership_id", found["id"])
            return found

    if _present(payload.cin):
        found = store.find_one("cin", payload.cin)
        if found:
            log.debug("Matched member %s by cin", found["id"])
            return found

    if _present(payload.email):
        email = str(payload.email).strip().lower()
        found = store.find_one("email", email, case_insensitive=True)
        if found:
            log.debug("Matched member %s by email", found["id"])
            return found

    if _present(payload.phone):
        found = store.find_one("phone", str(payload.phone))
        if found:
            log.debug("Matched member %s by phone", found["id"])
            return found

    if _present(payload.full_name):
        found = store.find_one("full_name", str(payload.full_name).strip(), case_insensitive=True)
        if found:
            log.debug("Matched member %s by full_name", found["id"])
            return found

    return None
