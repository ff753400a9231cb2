"""
Roster export to CSV and XLSX
"""

import csv
import io
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from database.models import ContactRecord, as_utc
from errors import ValidationError

EXPORT_FORMATS = ("csv", "xlsx")

MEDIA_TYPES = {
    "csv": "text/csv; charset=utf-8",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

# (header, attribute, xlsx column width)
EXPORT_COLUMNS: List[Tuple[str, str, int]] = [
    ("ID", "id", 8),
    ("Client Number", "client_number", 16),
    ("First Name", "first_name", 16),
    ("Last Name", "last_name", 16),
    ("Phone Number", "phone_number", 16),
    ("Alt Number", "alt_number", 16),
    ("Address", "address", 36),
    ("Email", "email", 30),
    ("Status", "status", 12),
    ("Group and Template", "group_template", 22),
    ("Has Changes", "has_changes", 12),
    ("Last Updated", "last_updated", 22),
    ("Created At", "created_at", 22),
]

HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
HEADER_FONT = Font(bold=True, color="FFFFFF", size=11)


def _cell_value(record: ContactRecord, attribute: str) -> Any:
    value = getattr(record, attribute)
    if attribute == "status":
        return value.value if value is not None else ""
    if attribute == "has_changes":
        return "Yes" if value else "No"
    if isinstance(value, datetime):
        return as_utc(value).strftime("%Y-%m-%d %H:%M:%S")
    return "" if value is None else value


def export_rows(records: Iterable[ContactRecord]) -> List[List[Any]]:
    """Header row followed by one row per record"""
    rows: List[List[Any]] = [[header for header, _, _ in EXPORT_COLUMNS]]
    for record in records:
        rows.append([_cell_value(record, attr) for _, attr, _ in EXPORT_COLUMNS])
    return rows


def export_filename(fmt: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    return f"client_records_{stamp}.{fmt}"


def to_csv(records: Iterable[ContactRecord]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerows(export_rows(records))
    return buffer.getvalue().encode("utf-8-sig")


def to_xlsx(records: Iterable[ContactRecord]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Client Records"

    rows = export_rows(records)
    for col_idx, (label, _, width) in enumerate(EXPORT_COLUMNS, 1):
        cell = ws.cell(row=1, column=col_idx, value=label)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center")
        ws.column_dimensions[get_column_letter(col_idx)].width = width

    for row_idx, row in enumerate(rows[1:], 2):
        for col_idx, value in enumerate(row, 1):
            ws.cell(row=row_idx, column=col_idx, value=value)

    ws.freeze_panes = "A2"
    ws.auto_filter.ref = f"A1:{get_column_letter(len(EXPORT_COLUMNS))}{len(rows)}"

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def export_records(
    records: Iterable[ContactRecord],
    fmt: str,
    now: Optional[datetime] = None
) -> Tuple[bytes, str, str]:
    """
    Render records in the requested format.

    Args:
        records: Records to export
        fmt: "csv" or "xlsx"
        now: Time used in the filename

    Returns:
        Tuple of (content, media type, filename)

    Raises:
        ValidationError: If the format is not supported
    """
    fmt = (fmt or "").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported export format: {fmt or '<empty>'}",
            field="format",
            suggestion="Use csv or xlsx"
        )
    content = to_csv(records) if fmt == "csv" else to_xlsx(records)
    return content, MEDIA_TYPES[fmt], export_filename(fmt, now)
