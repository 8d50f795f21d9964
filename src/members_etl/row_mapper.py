"""members_etl.row_mapper

Map a spreadsheet row with unknown header language, casing and punctuation
onto the wire-keyed field bag that normalization consumes.

Every header is indexed twice:
  - its trimmed, lowercased text ('الاسم', 'full name');
  - an ASCII form: whitespace → '_', anything outside [a-z0-9_] dropped
    ('Full Name' → 'full_name', 'E-mail' → 'email').

Each target field then walks its alias list (English forms first, Arabic
labels after) and takes the first header carrying a value.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from members_etl.normalize import is_blank

# ---------------------------------------------------------------------------
# Header aliases
# ---------------------------------------------------------------------------

HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "fullName": ("fullname", "name", "full_name", "full name", "name_ar", "الاسم", "الاسم الكامل"),
    "membershipId": ("membershipid", "id", "membership_id", "رقم العضوية", "رقم_العضوية"),
    "phone": ("phone", "telephone", "tel", "الهاتف"),
    "email": ("email", "mail", "e_mail", "البريد الإلكتروني", "البريد_الإلكتروني"),
    "address": ("address", "address_ar", "العنوان"),
    "gender": ("gender", "sex", "الجنس"),
    "status": ("status", "الحالة"),
    "memberType": ("membertype", "member_type", "type", "نوع العضوية", "نوع_العضوية"),
    "joinedAt": (
        "joinedat", "joined_at", "joined", "join_date",
        "membershipdate", "membership_date",
        "تاريخ العضوية", "تاريخ_العضوية", "تاريخ الانضمام", "تاريخ_الانضمام",
    ),
    "educationLevel": ("educationlevel", "education", "education_level", "المستوى الدراسي", "المستوى_الدراسي"),
    "occupation": ("occupation", "job", "العمل", "المهنة"),
    "role": ("role", "position", "المهمة", "المهمة (نص)"),
    "bio": ("bio", "notes", "description", "نبذة", "ملاحظات"),
    "pdfUrl": ("pdfurl", "pdf_url", "cv", "resume", "السيرة الذاتية"),
    "cin": ("cin", "cin_number", "national_id", "الرقم الوطني", "الرقم_الوطني"),
    "photoUrl": ("photourl", "photo_url", "image", "photo", "الصورة"),
    "neighborhood": ("neighborhood", "area", "الحي"),
    "financialCommitment": (
        "financialcommitment", "financial_commitment",
        "الالتزام المالي", "الالتزام_المالي",
    ),
}

_WHITESPACE_RE = re.compile(r"\s+")
_NON_ASCII_KEY_RE = re.compile(r"[^a-z0-9_]")


def header_forms(header: Any) -> tuple[str, str]:
    """Return (lowercase, ascii) lookup forms for one header label."""
    lowered = str(header).strip().lower()
    ascii_form = _NON_ASCII_KEY_RE.sub("", _WHITESPACE_RE.sub("_", lowered))
    return lowered, ascii_form


def index_headers(row: Mapping[Any, Any]) -> dict[str, Any]:
    """Index every cell value under both lookup forms of its header."""
    indexed: dict[str, Any] = {}
    for header, value in row.items():
        if header is None:
            continue
        lowered, ascii_form = header_forms(header)
        if ascii_form:
            indexed[ascii_form] = value
        indexed[lowered] = value
    return indexed


def map_row(row: Mapping[Any, Any]) -> dict[str, Any]:
    """Map one spreadsheet row to a wire-keyed field bag.

    Fields with no matching, non-blank cell are left out entirely.
    """
    indexed = index_headers(row)
    bag: dict[str, Any] = {}
    for target, aliases in HEADER_ALIASES.items():
        for alias in aliases:
            value = indexed.get(alias)
            if not is_blank(value):
                bag[target] = value
                break
    return bag
