"""Normalization functions for member input.

Two callers share these rules:

  - the interactive create/edit path (``normalize_member_input``), which
    passes unrecognized enum tokens through so the database constraints
    reject them;
  - the spreadsheet import path (``members_etl.import_members``), which
    drops anything it cannot recognize.

Parse functions return ``Recognized`` / ``Unrecognized`` so each caller
picks its own policy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from dateutil import parser as date_parser

# ---------------------------------------------------------------------------
# Tri-state marker
# ---------------------------------------------------------------------------


class _Absent:
    """Marker for a field that was not supplied at all."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


# ---------------------------------------------------------------------------
# Tagged parse results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Recognized:
    value: Any


@dataclass(frozen=True)
class Unrecognized:
    original: Any


ParseResult = Recognized | Unrecognized


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FEMALE_TOKENS = frozenset({"أنثى", "female", "f", "أنثي", "انثى"})
MALE_TOKENS = frozenset({"ذكر", "male", "m", "ذكرى"})

ACTIVE_TOKENS = frozenset({"نشط", "active"})
INACTIVE_TOKENS = frozenset({"غير نشط", "inactive", "غير_نشط", "غير-نشط"})

TRUE_TOKENS = frozenset({"true", "1", "نعم", "y", "yes"})

ALLOWED_NEIGHBORHOODS = (
    "أكدال",
    "دار دبيبغ",
    "الأدارسة",
    "الدكارات",
    "سيدي ابراهيم",
    "طارق",
)

MEMBERSHIP_DATE_ALIAS = "membershipDate"

# Spreadsheet serial day 0.
EXCEL_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)

# Free-form dates are parsed against both defaults; a result that moves with
# the default was missing its year or day ("may", "10:30") and is rejected.
_PARSE_DEFAULTS = (datetime(1970, 1, 1), datetime(1971, 1, 2))

_PHONE_PUNCTUATION_RE = re.compile(r"[\s\-()]+")
_CIN_SEPARATOR_RE = re.compile(r"[-\s]+")
_ISO_DATE_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})\s*$")
_NUMERIC_RE = re.compile(r"^\d+(?:\.\d+)?$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def is_blank(value: Any) -> bool:
    """True for None and for strings that are empty after trimming."""
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


# ---------------------------------------------------------------------------
# Rule 2: gender / status synonyms
# ---------------------------------------------------------------------------

def parse_gender(value: Any) -> ParseResult:
    """Map localized gender labels to 'M' / 'F'."""
    if not isinstance(value, str):
        return Unrecognized(value)
    token = value.strip().lower()
    if token in FEMALE_TOKENS:
        return Recognized("F")
    if token in MALE_TOKENS:
        return Recognized("M")
    return Unrecognized(value)


def parse_status(value: Any) -> ParseResult:
    """Map localized status labels to 'active' / 'inactive'."""
    if not isinstance(value, str):
        return Unrecognized(value)
    token = value.strip().lower()
    if token in ACTIVE_TOKENS:
        return Recognized("active")
    if token in INACTIVE_TOKENS:
        return Recognized("inactive")
    return Unrecognized(value)


# ---------------------------------------------------------------------------
# Rule 3: phone / national ID / neighborhood
# ---------------------------------------------------------------------------

def clean_phone(value: str | None) -> str | None:
    """Remove whitespace, hyphens and parentheses; None when nothing is left.

    '06-12 34 56 78' → '0612345678'
    """
    if value is None:
        return None
    return trim(_PHONE_PUNCTUATION_RE.sub("", value))


def clean_cin(value: Any) -> str | None:
    """Uppercase a national ID and strip dashes/whitespace; None when blank."""
    if is_blank(value):
        return None
    cleaned = _CIN_SEPARATOR_RE.sub("", str(value).strip().upper())
    return cleaned or None


def parse_neighborhood(value: Any) -> ParseResult:
    """Accept only the fixed neighborhood allow-list."""
    if isinstance(value, str) and value.strip() in ALLOWED_NEIGHBORHOODS:
        return Recognized(value.strip())
    return Unrecognized(value)


# ---------------------------------------------------------------------------
# Rule 4: booleans
# ---------------------------------------------------------------------------

def parse_bool(value: Any) -> bool:
    """Parse checkbox-ish values: True, 'true', '1', 'نعم', 'y', 'yes'."""
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return False
    return str(value).strip().lower() in TRUE_TOKENS


# ---------------------------------------------------------------------------
# Rule 5: membership id
# ---------------------------------------------------------------------------

def parse_membership_id(value: Any) -> ParseResult:
    """Coerce an integral numeric value ('100', 100.0) to int."""
    if isinstance(value, bool) or is_blank(value):
        return Unrecognized(value)
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        return Unrecognized(value)
    if not number.is_finite() or number != number.to_integral_value():
        return Unrecognized(value)
    return Recognized(int(number))


# ---------------------------------------------------------------------------
# Rule 6: dates
# ---------------------------------------------------------------------------

def as_utc(value: date | datetime) -> datetime:
    """Return a tz-aware UTC datetime; plain dates land on UTC midnight."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def parse_iso_date(value: str) -> ParseResult:
    """Parse 'YYYY-M-D' as a date-only value at UTC midnight."""
    m = _ISO_DATE_RE.match(value)
    if not m:
        return Unrecognized(value)
    year, month, day = (int(g) for g in m.groups())
    try:
        return Recognized(datetime(year, month, day, tzinfo=timezone.utc))
    except ValueError:
        return Unrecognized(value)


def parse_generic_date(value: str) -> ParseResult:
    """Free-form date parsing; naive results are taken as UTC.

    The text must carry at least a year and a day of month.
    """
    try:
        first, second = (date_parser.parse(value, default=d) for d in _PARSE_DEFAULTS)
    except (ValueError, OverflowError):
        return Unrecognized(value)
    if first != second:
        return Unrecognized(value)
    return Recognized(as_utc(first))


def excel_serial_to_datetime(serial: float) -> datetime:
    """Convert a spreadsheet date serial (days since 1899-12-30) to UTC.

    44927 → 2023-01-01T00:00:00+00:00
    """
    millis = round(serial * 24 * 60 * 60 * 1000)
    return EXCEL_EPOCH + timedelta(milliseconds=millis)


def parse_membership_date(value: Any) -> ParseResult:
    """Parse a membership date typed into the edit form."""
    if isinstance(value, (date, datetime)):
        return Recognized(as_utc(value))
    if is_blank(value):
        return Unrecognized(value)
    text = str(value).strip()
    iso = parse_iso_date(text)
    if isinstance(iso, Recognized):
        return iso
    return parse_generic_date(text)


def parse_import_date(value: Any) -> ParseResult:
    """Parse a membership date cell from a spreadsheet.

    Accepts date cells, 'YYYY-M-D' strings, spreadsheet serials (number or
    numeric string), then anything python-dateutil understands.
    """
    if isinstance(value, (date, datetime)):
        return Recognized(as_utc(value))
    if is_blank(value) or isinstance(value, bool):
        return Unrecognized(value)
    text = str(value).strip()
    iso = parse_iso_date(text)
    if isinstance(iso, Recognized):
        return iso
    if _ISO_DATE_RE.match(text):
        # Well-formed but impossible calendar date, e.g. 2024-02-30.
        return Unrecognized(value)
    if isinstance(value, (int, float)) or _NUMERIC_RE.match(text):
        try:
            return Recognized(excel_serial_to_datetime(float(text)))
        except (OverflowError, ValueError):
            return Unrecognized(value)
    return parse_generic_date(text)


# ---------------------------------------------------------------------------
# MemberPayload
# ---------------------------------------------------------------------------

# wire key (form / spreadsheet) → payload attribute / column name
WIRE_FIELDS: dict[str, str] = {
    "fullName": "full_name",
    "membershipId": "membership_id",
    "gender": "gender",
    "status": "status",
    "memberType": "member_type",
    "phone": "phone",
    "email": "email",
    "address": "address",
    "role": "role",
    "bio": "bio",
    "pdfUrl": "pdf_url",
    "photoUrl": "photo_url",
    "occupation": "occupation",
    "educationLevel": "education_level",
    "financialCommitment": "financial_commitment",
    "cin": "cin",
    "neighborhood": "neighborhood",
    "memberOfRegionalBodies": "member_of_regional_bodies",
    "memberOfRegionalBodiesDetail": "member_of_regional_bodies_detail",
    "assignedMission": "assigned_mission",
    "assignedMissionDetail": "assigned_mission_detail",
    "previousPartyExperiences": "previous_party_experiences",
    "joinedAt": "joined_at",
}

TEXT_FIELDS = (
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
    "memberOfRegionalBodiesDetail",
    "assignedMissionDetail",
    "previousPartyExperiences",
)

BOOLEAN_FIELDS = ("memberOfRegionalBodies", "assignedMission")


@dataclass
class MemberPayload:
    """Schema-ready member fields.

    Every attribute is tri-state: ``ABSENT`` (leave the stored value alone),
    ``None`` (clear it) or a value (set it).
    """

    full_name: Any = ABSENT
    membership_id: Any = ABSENT
    gender: Any = ABSENT
    status: Any = ABSENT
    member_type: Any = ABSENT
    phone: Any = ABSENT
    email: Any = ABSENT
    address: Any = ABSENT
    role: Any = ABSENT
    bio: Any = ABSENT
    pdf_url: Any = ABSENT
    photo_url: Any = ABSENT
    occupation: Any = ABSENT
    education_level: Any = ABSENT
    financial_commitment: Any = ABSENT
    cin: Any = ABSENT
    neighborhood: Any = ABSENT
    member_of_regional_bodies: Any = ABSENT
    member_of_regional_bodies_detail: Any = ABSENT
    assigned_mission: Any = ABSENT
    assigned_mission_detail: Any = ABSENT
    previous_party_experiences: Any = ABSENT
    joined_at: Any = ABSENT

    def present(self) -> dict[str, Any]:
        """Column → value for every field that is not ABSENT (None included)."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not ABSENT
        }

    def non_empty(self) -> dict[str, Any]:
        """Column → value for fields carrying an actual value."""
        return {k: v for k, v in self.present().items() if v is not None and v != ""}

    def to_raw(self) -> dict[str, Any]:
        """Wire-keyed view, suitable for feeding back into normalization."""
        out: dict[str, Any] = {}
        for wire, attr in WIRE_FIELDS.items():
            v = getattr(self, attr)
            if v is not ABSENT:
                out[wire] = v
        return out

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> MemberPayload:
        return cls(**{WIRE_FIELDS[k]: v for k, v in raw.items() if k in WIRE_FIELDS})


# ---------------------------------------------------------------------------
# Interactive-path normalization
# ---------------------------------------------------------------------------

def _trim_text(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip() or None
    return value


def normalize_member_input(raw: Mapping[str, Any]) -> MemberPayload:
    """Canonicalize a form-style field bag.

    Only keys present in ``raw`` can appear in the result; nothing is
    invented. ``cin``, ``neighborhood`` and the membership date are removed
    rather than cleared when blank or invalid.
    """
    bag = {k: v for k, v in raw.items() if k in WIRE_FIELDS}
    out: dict[str, Any] = {}

    for key in TEXT_FIELDS:
        if key in bag:
            out[key] = _trim_text(bag[key])

    if "gender" in bag:
        g = parse_gender(bag["gender"])
        out["gender"] = g.value if isinstance(g, Recognized) else bag["gender"]

    if "status" in bag:
        s = parse_status(bag["status"])
        out["status"] = s.value if isinstance(s, Recognized) else bag["status"]

    if "phone" in bag:
        phone = bag["phone"]
        out["phone"] = clean_phone(phone) if isinstance(phone, str) else phone

    if "cin" in bag:
        cin = clean_cin(bag["cin"])
        if cin is not None:
            out["cin"] = cin

    if "neighborhood" in bag:
        hood = parse_neighborhood(bag["neighborhood"])
        if isinstance(hood, Recognized):
            out["neighborhood"] = hood.value

    for key in BOOLEAN_FIELDS:
        if key in bag:
            out[key] = parse_bool(bag[key])

    if "membershipId" in bag:
        mid = parse_membership_id(bag["membershipId"])
        if isinstance(mid, Recognized):
            out["membershipId"] = mid.value
        elif not is_blank(bag["membershipId"]):
            out["membershipId"] = bag["membershipId"]

    # Already-canonical dates pass through; the alias wins when both appear.
    if isinstance(bag.get("joinedAt"), (date, datetime)):
        out["joinedAt"] = as_utc(bag["joinedAt"])
    if MEMBERSHIP_DATE_ALIAS in raw and not is_blank(raw[MEMBERSHIP_DATE_ALIAS]):
        joined = parse_membership_date(raw[MEMBERSHIP_DATE_ALIAS])
        if isinstance(joined, Recognized):
            out["joinedAt"] = joined.value

    return MemberPayload.from_raw(out)
