"""members_etl.spreadsheet

Decode an uploaded .xlsx workbook into header-keyed rows.

The first row of a sheet is its header. Columns with an empty header are
ignored, repeated headers get a numeric suffix ('Name', 'Name_1'), empty
cells become None, and rows with no value at all are skipped.
"""

from __future__ import annotations

import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from members_etl.shared import ImportRejectedError


@dataclass
class WorkbookRows:
    sheet_names: list[str]
    data: bytes = field(default=b"", repr=False)

    def rows(self, sheet_name: str | None = None) -> list[dict[str, Any]]:
        """Rows of the named sheet, or of the first sheet when no name is given.

        Only the requested sheet is decoded.
        """
        if sheet_name is None:
            if not self.sheet_names:
                raise ImportRejectedError("Excel file contains no sheets.")
            sheet_name = self.sheet_names[0]
        if sheet_name not in self.sheet_names:
            raise ImportRejectedError(f"Sheet {sheet_name!r} not found in workbook.")
        wb = _open_workbook(self.data)
        try:
            return sheet_rows(list(wb[sheet_name].iter_rows(values_only=True)))
        finally:
            wb.close()


def _header_labels(header_row: tuple[Any, ...]) -> list[str | None]:
    labels: list[str | None] = []
    seen: dict[str, int] = {}
    for cell in header_row:
        if cell is None or (isinstance(cell, str) and not cell.strip()):
            labels.append(None)
            continue
        label = str(cell).strip()
        if label in seen:
            seen[label] += 1
            label = f"{label}_{seen[label]}"
        else:
            seen[label] = 0
        labels.append(label)
    return labels


def _is_blank_cell(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def sheet_rows(values: list[tuple[Any, ...]]) -> list[dict[str, Any]]:
    """Turn raw cell tuples (header first) into header-keyed dicts."""
    if not values:
        return []
    labels = _header_labels(values[0])
    rows: list[dict[str, Any]] = []
    for raw in values[1:]:
        if all(_is_blank_cell(v) for v in raw):
            continue
        row: dict[str, Any] = {}
        for idx, label in enumerate(labels):
            if label is None:
                continue
            value = raw[idx] if idx < len(raw) else None
            row[label] = None if _is_blank_cell(value) else value
        rows.append(row)
    return rows


def _open_workbook(data: bytes) -> Workbook:
    try:
        return load_workbook(BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError, ValueError) as exc:
        raise ImportRejectedError(f"Could not read Excel file: {exc}") from exc


def read_workbook(data: bytes) -> WorkbookRows:
    """Open workbook bytes and list their sheets.

    Raises:
        ImportRejectedError: If the bytes are not a readable .xlsx workbook.
    """
    if not data:
        raise ImportRejectedError("Uploaded file is empty.")
    wb = _open_workbook(data)
    try:
        return WorkbookRows(sheet_names=list(wb.sheetnames), data=data)
    finally:
        wb.close()
