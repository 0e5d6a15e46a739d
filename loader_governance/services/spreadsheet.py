"""Spreadsheet boundary for loader imports and exports.

Reads ``.xlsx`` and ``.csv`` import files into :class:`ImportRow` records and
builds the template, the active-loader export and the per-batch error report
as ``.xlsx`` workbooks.
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException

from loader_governance.constants.import_columns import (
    COLUMN_TO_FIELD,
    ERROR_REPORT_COLUMNS,
    ERROR_REPORT_SHEET,
    EXPORT_COLUMNS,
    FIELD_TO_COLUMN,
    IMPORT_COLUMNS,
)
from loader_governance.models import LoaderConfiguration
from loader_governance.schemas import ImportErrorEntry, ImportRow
from loader_governance.services.errors import ImportFileError
from loader_governance.services.field_protection import mask_protected

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXCEL_SUFFIXES = {".xlsx", ".xlsm"}

_CANONICAL_HEADERS = {name.strip().lower(): name for name in IMPORT_COLUMNS}


@dataclass
class ParsedImport:
    columns: list[str]
    rows: list[ImportRow] = field(default_factory=list)
    ignored_columns: list[str] = field(default_factory=list)


def is_excel_file(filename: Optional[str]) -> bool:
    if not filename:
        return False
    return Path(filename).suffix.lower() in EXCEL_SUFFIXES


def _format_cell(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    text = str(value).strip()
    return text or None


def _decode_bytes(data: bytes) -> str:
    for encoding in ("utf-8-sig", "utf-8", "latin-1"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ImportFileError("Unable to decode file. Use UTF-8 encoding.")


def _read_excel_rows(data: bytes) -> list[list[Optional[str]]]:
    try:
        workbook = load_workbook(filename=io.BytesIO(data), read_only=True, data_only=True)
    except InvalidFileException as exc:
        raise ImportFileError("Uploaded Excel file is invalid.") from exc
    except (zipfile.BadZipFile, OSError, ValueError, KeyError) as exc:
        raise ImportFileError("Unable to read the uploaded Excel file.") from exc

    try:
        sheet = workbook.active
        return [[_format_cell(cell) for cell in row] for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _read_csv_rows(data: bytes) -> list[list[Optional[str]]]:
    reader = csv.reader(io.StringIO(_decode_bytes(data)))
    try:
        return [[_format_cell(cell) for cell in row] for row in reader]
    except csv.Error as exc:
        raise ImportFileError(f"Unable to parse CSV file: {exc}") from exc


def parse_import_file(
    data: bytes,
    filename: Optional[str],
    *,
    required_columns: Sequence[str],
    max_rows: int,
    max_bytes: Optional[int] = None,
) -> ParsedImport:
    """Parse an import file, applying every file-level check before returning any row."""

    if not data:
        raise ImportFileError("Uploaded file is empty.")
    if max_bytes is not None and len(data) > max_bytes:
        raise ImportFileError(f"Uploaded file exceeds the {max_bytes} byte size limit.")

    raw_rows = _read_excel_rows(data) if is_excel_file(filename) else _read_csv_rows(data)
    if not raw_rows or not any(raw_rows[0]):
        raise ImportFileError("Uploaded file has no header row.")

    header = raw_rows[0]
    positions: dict[str, int] = {}
    ignored: list[str] = []
    for index, name in enumerate(header):
        if not name:
            continue
        canonical = _CANONICAL_HEADERS.get(name.strip().lower())
        if canonical is None:
            ignored.append(name)
        elif canonical not in positions:
            positions[canonical] = index

    missing = [column for column in required_columns if column not in positions]
    if missing:
        raise ImportFileError(f"Missing required columns: {', '.join(missing)}")

    rows: list[ImportRow] = []
    for offset, raw in enumerate(raw_rows[1:], start=2):
        values = {
            column: (raw[index] if index < len(raw) else None)
            for column, index in positions.items()
        }
        if not any(values.values()):
            continue
        rows.append(ImportRow(row_number=offset, values=values))

    if not rows:
        raise ImportFileError("Uploaded file contains no data rows.")
    if len(rows) > max_rows:
        raise ImportFileError(f"File contains {len(rows)} rows; the limit is {max_rows} rows per file.")

    logger.info(
        "spreadsheet:parse file=%s rows=%s ignored_columns=%s",
        filename,
        len(rows),
        len(ignored),
    )
    return ParsedImport(columns=list(positions), rows=rows, ignored_columns=ignored)


def _write_workbook(sheet_title: str, headers: Iterable[str], rows: Iterable[Sequence[Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_title
    sheet.append(list(headers))
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append(list(row))
    sheet.freeze_panes = "A2"

    buffer = io.BytesIO()
    workbook.save(buffer)
    workbook.close()
    return buffer.getvalue()


def build_import_template() -> bytes:
    example = ["CREATE", "EXAMPLE_LOADER", "SELECT * FROM source_table", 60, 300, 3600, 1, "FAIL_ON_DUPLICATE", 0, None, None, "true"]
    return _write_workbook("Loaders", IMPORT_COLUMNS, [example])


def build_loader_export(versions: Iterable[LoaderConfiguration]) -> bytes:
    """Export loaders with protected attributes replaced by the placeholder."""

    rows = []
    for version in versions:
        payload = mask_protected({name: getattr(version, name) for name in COLUMN_TO_FIELD.values()})
        row: list[Any] = [version.loader_code]
        for name in COLUMN_TO_FIELD.values():
            value = payload.get(name)
            if isinstance(value, bool):
                value = "true" if value else "false"
            row.append(value)
        row.extend(
            [
                version.version_number,
                version.approved_by,
                version.approved_at.isoformat() if version.approved_at else None,
            ]
        )
        rows.append(row)
    return _write_workbook("Loaders", EXPORT_COLUMNS, rows)


def build_error_report(errors: Iterable[ImportErrorEntry]) -> bytes:
    rows = []
    for error in errors:
        column = FIELD_TO_COLUMN.get(error.field or "", error.field)
        category = error.category.value if hasattr(error.category, "value") else error.category
        rows.append([error.row_number, error.loader_code, column, error.message, category])
    return _write_workbook(ERROR_REPORT_SHEET, ERROR_REPORT_COLUMNS, rows)


__all__ = [
    "ParsedImport",
    "XLSX_MEDIA_TYPE",
    "build_error_report",
    "build_import_template",
    "build_loader_export",
    "is_excel_file",
    "parse_import_file",
]
