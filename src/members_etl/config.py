"""members_etl.config

YAML settings for the member tools.

Usage:
    from pathlib import Path
    from members_etl.config import load_settings

    settings = load_settings(Path("config/members_etl.yml"))
    settings.max_import_rows  # 1000

Every key is optional; missing keys take the defaults below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from members_etl.identity import ImportMode

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KNOWN_KEYS = frozenset({
    "max_import_rows",
    "default_import_mode",
    "public_root",
    "reports_dir",
})

VALID_IMPORT_MODES = tuple(m.value for m in ImportMode)


class SettingsValidationError(ValueError):
    """Raised when a settings file fails validation."""


@dataclass
class Settings:
    max_import_rows: int = 1000
    default_import_mode: ImportMode = ImportMode.UPSERT
    public_root: Path = field(default_factory=lambda: Path("./public"))
    reports_dir: Path = field(default_factory=lambda: Path("./artifacts/reports"))


def validate_settings(data: Any) -> None:
    """Raise SettingsValidationError if data does not match the settings schema."""
    if data is None:
        return
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    unknown = set(data) - KNOWN_KEYS
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    if "max_import_rows" in data:
        rows = data["max_import_rows"]
        if isinstance(rows, bool) or not isinstance(rows, int) or rows < 1:
            raise SettingsValidationError(
                f"'max_import_rows' must be a positive integer, got {rows!r}."
            )

    if "default_import_mode" in data:
        mode = data["default_import_mode"]
        if str(mode).strip().lower() not in VALID_IMPORT_MODES:
            raise SettingsValidationError(
                f"Invalid default_import_mode '{mode}'. Must be one of {list(VALID_IMPORT_MODES)}."
            )

    for key in ("public_root", "reports_dir"):
        if key in data and (not isinstance(data[key], str) or not data[key].strip()):
            raise SettingsValidationError(f"'{key}' must be a non-empty path string.")


def load_settings(yaml_path: Path | None) -> Settings:
    """Load and validate settings; None returns the defaults.

    Raises:
        SettingsValidationError: If the file content is invalid.
        FileNotFoundError: If yaml_path does not exist.
    """
    if yaml_path is None:
        return Settings()
    data = yaml.safe_load(Path(yaml_path).read_text(encoding="utf-8"))
    validate_settings(data)
    data = data or {}
    settings = Settings()
    if "max_import_rows" in data:
        settings.max_import_rows = int(data["max_import_rows"])
    if "default_import_mode" in data:
        settings.default_import_mode = ImportMode.parse(str(data["default_import_mode"]))
    if "public_root" in data:
        settings.public_root = Path(data["public_root"])
    if "reports_dir" in data:
        settings.reports_dir = Path(data["reports_dir"])
    return settings
