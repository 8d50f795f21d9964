"""members_etl.uploads

Local photo uploads.

Files live in ``<public_root>/uploads`` and are referenced by URLs such as
``/static/uploads/<file>`` (absolute http(s) URLs pointing at the same path
are accepted too). Deletion is confined to that directory and never
raises: callers get an ``UnlinkResult`` and decide what to log.
"""

from __future__ import annotations

import enum
import logging
import re
import time
import urllib.parse
from pathlib import Path

log = logging.getLogger(__name__)

UPLOADS_SUBDIR = "uploads"
PUBLIC_URL_PREFIX = "/static/uploads/"
MAX_UPLOAD_BYTES = 5 * 1024 * 1024

_UNSAFE_NAME_CHARS_RE = re.compile(r"[^a-z0-9.\-_\u0600-\u06FF]", re.IGNORECASE)
_ABSOLUTE_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


class UploadTooLargeError(ValueError):
    """Raised when an uploaded file exceeds MAX_UPLOAD_BYTES."""


class UnlinkResult(enum.Enum):
    REMOVED = "removed"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"  # not a reference into the uploads directory
    ERROR = "error"

    @property
    def removed(self) -> bool:
        return self is UnlinkResult.REMOVED


def uploads_dir(public_root: Path) -> Path:
    return Path(public_root) / UPLOADS_SUBDIR


def resolve_upload_path(url: str | None, public_root: Path) -> Path | None:
    """Return the local file a stored URL refers to, or None.

    Only paths strictly inside the uploads directory are returned, so
    '../' tricks and references to other public files come back as None.
    """
    if not isinstance(url, str) or not url.strip():
        return None
    value = url.strip()
    try:
        if _ABSOLUTE_URL_RE.match(value):
            pathname = urllib.parse.urlparse(value).path
        else:
            pathname = value
        pathname = urllib.parse.unquote(pathname)
        rel = re.sub(r"^/static/", "", pathname)
        rel = re.sub(r"^/", "", rel)
        root = uploads_dir(public_root).resolve()
        resolved = (Path(public_root) / rel).resolve()
        if resolved == root or not resolved.is_relative_to(root):
            return None
    except (OSError, ValueError, RuntimeError):
        return None
    return resolved


def is_local_upload(url: str | None, public_root: Path) -> bool:
    return resolve_upload_path(url, public_root) is not None


def safe_unlink(url: str | None, public_root: Path) -> UnlinkResult:
    """Delete the upload a URL refers to, if it is ours and still exists."""
    path = resolve_upload_path(url, public_root)
    if path is None:
        return UnlinkResult.REJECTED
    try:
        if not path.is_file():
            return UnlinkResult.NOT_FOUND
        path.unlink()
    except FileNotFoundError:
        return UnlinkResult.NOT_FOUND
    except OSError as exc:
        log.warning("Could not delete upload %s: %s", path, exc)
        return UnlinkResult.ERROR
    return UnlinkResult.REMOVED


def safe_upload_name(original_name: str, now_ms: int | None = None) -> str:
    """'<millis>-<name>' with anything outside [a-z0-9.-_] and Arabic replaced."""
    millis = int(time.time() * 1000) if now_ms is None else now_ms
    return f"{millis}-{_UNSAFE_NAME_CHARS_RE.sub('_', original_name)}"


def store_photo_upload(
    data: bytes,
    original_name: str,
    public_root: Path,
    now_ms: int | None = None,
) -> str:
    """Write an uploaded photo and return its public URL."""
    if len(data) > MAX_UPLOAD_BYTES:
        raise UploadTooLargeError(
            f"Upload is {len(data)} bytes; limit is {MAX_UPLOAD_BYTES}"
        )
    name = safe_upload_name(original_name, now_ms)
    dest = uploads_dir(public_root) / name
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    log.info("Stored upload %s (%d bytes)", dest, len(data))
    return PUBLIC_URL_PREFIX + name
