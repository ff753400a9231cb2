"""
Spreadsheet Import Pipeline

Reads an uploaded CSV or XLSX file of client contact rows, validates each
row, upserts it into the record store, publishes progress, then issues a
fresh verification token for every affected record and hands the batch to
the notification dispatcher.

Row problems never abort the batch; they are collected in the report. A
file that cannot be parsed at all is rejected before any row is written.
"""

import csv
import logging
import zipfile
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config_manager import ValidationConfig
from database.models import AuditAction, AuditSource, ContactRecord, RecordStatus
from database.repositories import (
    AuditRepository,
    ContactRecordRepository,
    RepositoryError,
    Requester,
)
from errors import ValidationError
from text_utils import clean_cell, is_valid_email, normalize_header, sanitize_for_logging
from tokens import TokenIssuer

logger = logging.getLogger(__name__)


# ============================================
# COLUMN LAYOUT
# ============================================

# Positional layout used when the file has no recognizable header row
COLUMN_ORDER = (
    "client_number",
    "first_name",
    "last_name",
    "phone_number",
    "alt_number",
    "address",
    "email",
    "group_template",
)

REQUIRED_FIELDS = (
    "client_number",
    "first_name",
    "last_name",
    "address",
    "phone_number",
    "email",
)

NAME_FIELDS = ("first_name", "last_name")

# Normalized header spellings accepted for each column
HEADER_ALIASES: Dict[str, Tuple[str, ...]] = {
    "client_number": ("client_number", "client_no", "client_num", "clientnumber",
                      "client_id", "client", "account_number"),
    "first_name": ("first_name", "firstname", "first", "given_name"),
    "last_name": ("last_name", "lastname", "last", "surname", "family_name"),
    "phone_number": ("phone_number", "phone", "phonenumber", "phone_no",
                     "telephone", "mobile"),
    "alt_number": ("alt_number", "alternate_number", "alternative_number",
                   "alt_phone", "alt_no", "secondary_phone"),
    "address": ("address", "street_address", "mailing_address"),
    "email": ("email", "email_address", "e_mail"),
    "group_template": ("group_template", "group_and_template", "group", "template"),
}

_ALIAS_LOOKUP = {
    alias: field_name
    for field_name, aliases in HEADER_ALIASES.items()
    for alias in aliases
}

SUPPORTED_EXTENSIONS = (".csv", ".xlsx")


# ============================================
# DATA CLASSES
# ============================================

@dataclass
class ParsedRow:
    """One non-blank data row, keyed by field name"""
    row_number: int
    values: Dict[str, str]


@dataclass
class ParsedSheet:
    """Result of reading a spreadsheet"""
    rows: List[ParsedRow]
    has_header: bool
    columns: List[str]


@dataclass
class RowFailure:
    """Why one row was not imported"""
    row: int
    reason: str
    field: Optional[str] = None
    client_number: Optional[str] = None


@dataclass
class BulkUpdateResult:
    """Outcome of token issuance and mail fan-out"""
    updated_count: int = 0
    emails_sent: int = 0
    email_failures: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ImportReport:
    """Structured result of one import run"""
    filename: str
    total_rows: int = 0
    successful: int = 0
    created: int = 0
    updated: int = 0
    failures: List[RowFailure] = field(default_factory=list)
    bulk_update: Optional[BulkUpdateResult] = None
    bulk_update_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "total_rows": self.total_rows,
            "successful": self.successful,
            "created": self.created,
            "updated": self.updated,
            "failures": [asdict(f) for f in self.failures],
            "bulk_update": asdict(self.bulk_update) if self.bulk_update else None,
            "bulk_update_error": self.bulk_update_error,
        }


# ============================================
# PARSING
# ============================================

def _invalid_file(message: str, suggestion: Optional[str] = None) -> ValidationError:
    return ValidationError(message, field="file", code="INVALID_FILE", suggestion=suggestion)


def _read_csv_rows(path: Path) -> List[Sequence[Any]]:
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            return [row for row in csv.reader(f)]
    except UnicodeDecodeError:
        raise _invalid_file("CSV file is not valid UTF-8 text",
                            suggestion="Save the file as CSV UTF-8 and upload it again")
    except csv.Error as e:
        raise _invalid_file(f"Malformed CSV file: {e}")


def _read_xlsx_rows(path: Path) -> List[Sequence[Any]]:
    try:
        wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as e:
        raise _invalid_file(f"Unreadable XLSX workbook: {e}")

    try:
        ws = wb.active
        if ws is None:
            raise _invalid_file("Workbook has no worksheets")
        return list(ws.iter_rows(min_row=1, values_only=True))
    finally:
        wb.close()


def _header_mapping(cells: Sequence[Any]) -> Optional[Dict[int, str]]:
    """
    Map column index to field name if the row looks like a header.

    Every required column must map, or more than half of the non-blank
    cells must be known column names. Data cells such as "Template" or
    "Mobile" match an alias on their own.
    """
    mapping: Dict[int, str] = {}
    for index, cell in enumerate(cells):
        field_name = _ALIAS_LOOKUP.get(normalize_header(cell))
        if field_name and field_name not in mapping.values():
            mapping[index] = field_name

    if all(name in mapping.values() for name in REQUIRED_FIELDS):
        return mapping

    filled = sum(1 for cell in cells if clean_cell(cell) != "")
    if mapping and len(mapping) * 2 > filled:
        return mapping
    return None


def _is_blank(cells: Sequence[Any]) -> bool:
    return all(clean_cell(c) == "" for c in cells)


def read_spreadsheet(path: Path, filename: str) -> ParsedSheet:
    """
    Parse a CSV or XLSX file into field-keyed rows.

    The first non-blank row is treated as a header when it names every
    required column or mostly holds known column names; otherwise every
    row is data and columns are mapped positionally.

    Args:
        path: Location of the uploaded file on disk
        filename: Original client filename (decides the format)

    Returns:
        ParsedSheet with one ParsedRow per non-blank data row

    Raises:
        ValidationError: If the format is unsupported or the file cannot be parsed
    """
    extension = Path(filename or "").suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise _invalid_file(
            f"Unsupported file type: {extension or '<none>'}",
            suggestion="Upload a .csv or .xlsx file"
        )

    raw_rows = _read_csv_rows(Path(path)) if extension == ".csv" else _read_xlsx_rows(Path(path))

    numbered = [
        (number, cells)
        for number, cells in enumerate(raw_rows, start=1)
        if cells and not _is_blank(cells)
    ]
    if not numbered:
        raise _invalid_file("File contains no rows")

    first_cells = numbered[0][1]
    mapping = _header_mapping(first_cells)
    has_header = mapping is not None
    if has_header:
        missing = [name for name in REQUIRED_FIELDS if name not in mapping.values()]
        if missing:
            raise _invalid_file(
                f"Header row is missing required columns: {', '.join(missing)}",
                suggestion="Required columns: " + ", ".join(REQUIRED_FIELDS)
            )
        data_rows = numbered[1:]
    else:
        mapping = {index: name for index, name in enumerate(COLUMN_ORDER)}
        data_rows = numbered

    rows = []
    for number, cells in data_rows:
        values = {name: "" for name in COLUMN_ORDER}
        for index, name in mapping.items():
            if index < len(cells):
                values[name] = clean_cell(cells[index])
        rows.append(ParsedRow(row_number=number, values=values))

    return ParsedSheet(
        rows=rows,
        has_header=has_header,
        columns=[mapping[i] for i in sorted(mapping)]
    )


# ============================================
# VALIDATION
# ============================================

def validate_contact_fields(
    fields: Dict[str, Any],
    limits: Optional[ValidationConfig] = None
) -> Dict[str, Optional[str]]:
    """
    Validate and clean the editable fields of one contact.

    Args:
        fields: Raw values keyed by field name
        limits: Maximum field lengths (defaults apply when omitted)

    Returns:
        Cleaned editable fields; an empty alt_number becomes None

    Raises:
        ValidationError: On the first missing, malformed or oversized field
    """
    limits = limits or ValidationConfig()
    cleaned: Dict[str, Optional[str]] = {}
    for name in REQUIRED_FIELDS + ("alt_number",):
        value = fields.get(name)
        cleaned[name] = clean_cell(value) if value is not None else ""

    for name in REQUIRED_FIELDS:
        if not cleaned[name]:
            raise ValidationError(f"missing required field: {name}", field=name)

    if not is_valid_email(cleaned["email"]):
        raise ValidationError("invalid email", field="email")

    for name, value in cleaned.items():
        if name in NAME_FIELDS:
            maximum = limits.name_max_length
        elif name == "email":
            maximum = limits.email_max_length
        else:
            maximum = limits.field_max_length
        if value and len(value) > maximum:
            raise ValidationError(
                f"{name} exceeds maximum length of {maximum} characters",
                field=name
            )

    cleaned["alt_number"] = cleaned["alt_number"] or None
    return cleaned


# ============================================
# PIPELINE
# ============================================

class ImportPipeline:
    """
    Runs one import against a database session.

    Each row is committed on its own so a bad row (or a database error on
    one row) never loses the rows around it.
    """

    def __init__(
        self,
        session: Session,
        issuer: TokenIssuer,
        dispatcher=None,
        broker=None,
        validation: Optional[ValidationConfig] = None,
        progress_every: int = 1
    ):
        self.session = session
        self.issuer = issuer
        self.dispatcher = dispatcher
        self.broker = broker
        self.validation = validation or ValidationConfig()
        self.progress_every = max(1, progress_every)
        self.records = ContactRecordRepository(session)
        self.audit = AuditRepository(session)

    def run(
        self,
        path: Path,
        filename: str,
        channel_id: Optional[str] = None,
        requester: Optional[Requester] = None
    ) -> ImportReport:
        """
        Import a file end to end.

        Args:
            path: Uploaded file on disk
            filename: Original filename
            channel_id: Progress channel to publish to, if any
            requester: Admin's IP address and user agent for audit entries

        Returns:
            ImportReport

        Raises:
            ValidationError: If the file itself cannot be parsed
        """
        try:
            sheet = read_spreadsheet(path, filename)
        except ValidationError as e:
            # Terminal event so a waiting progress socket closes
            self._publish(channel_id, 0, 0, error=str(e))
            raise
        report = ImportReport(filename=filename, total_rows=len(sheet.rows))
        logger.info(
            f"Importing {report.total_rows} rows from {sanitize_for_logging(filename)} "
            f"(header={'yes' if sheet.has_header else 'no'})"
        )

        affected: List[int] = []
        for index, row in enumerate(sheet.rows, start=1):
            record_id = self._import_row(row, report, requester)
            if record_id is not None and record_id not in affected:
                affected.append(record_id)

            if index % self.progress_every == 0 or index == report.total_rows:
                self._publish(channel_id, index, report.total_rows)

        if report.total_rows == 0:
            self._publish(channel_id, 0, 0)

        self._bulk_update(affected, report)

        logger.info(
            f"Import of {sanitize_for_logging(filename)} finished: "
            f"{report.successful}/{report.total_rows} rows, "
            f"{report.created} created, {report.updated} updated, "
            f"{len(report.failures)} failed"
        )
        return report

    def _import_row(
        self,
        row: ParsedRow,
        report: ImportReport,
        requester: Optional[Requester]
    ) -> Optional[int]:
        client_number = row.values.get("client_number") or None
        try:
            fields = validate_contact_fields(row.values, self.validation)
            record, created = self._upsert(fields, row.values.get("group_template") or None, requester)
            self.session.commit()
        except ValidationError as e:
            self.session.rollback()
            report.failures.append(RowFailure(
                row=row.row_number,
                reason=str(e),
                field=e.field,
                client_number=client_number
            ))
            return None
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error importing row {row.row_number}: {e}")
            report.failures.append(RowFailure(
                row=row.row_number,
                reason="database error while saving row",
                client_number=client_number
            ))
            return None

        report.successful += 1
        if created:
            report.created += 1
        else:
            report.updated += 1
        return record.id

    def _upsert(
        self,
        fields: Dict[str, Optional[str]],
        group_template: Optional[str],
        requester: Optional[Requester]
    ) -> Tuple[ContactRecord, bool]:
        existing = self.records.find_match(fields["client_number"], fields["email"])

        if existing is None:
            record = self.records.create(fields, group_template=group_template)
            self.audit.append(
                record.id, AuditAction.CREATED, None, record.snapshot(),
                requester=requester, source=AuditSource.IMPORT
            )
            return record, True

        old = existing.snapshot()
        attributes: Dict[str, Any] = {"status": RecordStatus.PENDING, "has_changes": False}
        if group_template is not None:
            attributes["group_template"] = group_template
        record = self.records.update_fields(existing, fields, **attributes)
        self.audit.append(
            record.id, AuditAction.UPDATED, old, record.snapshot(),
            requester=requester, source=AuditSource.IMPORT
        )
        return record, False

    def _publish(
        self,
        channel_id: Optional[str],
        processed: int,
        total: int,
        error: Optional[str] = None
    ) -> None:
        if not channel_id or self.broker is None:
            return
        progress = round(processed / total * 100, 2) if total else 100.0
        event: Dict[str, Any] = {"progress": progress}
        if error:
            event["error"] = error
        try:
            self.broker.publish(channel_id, event)
        except Exception as e:
            logger.warning(f"Progress publish to {sanitize_for_logging(channel_id)} failed: {e}")

    def _bulk_update(self, record_ids: List[int], report: ImportReport) -> None:
        """Issue tokens for every affected record, then send the mails."""
        items = []
        try:
            for record_id in record_ids:
                record = self.records.get_or_raise(record_id)
                items.append((record, self.issuer.issue(record)))
            self.session.commit()
        except (SQLAlchemyError, RepositoryError) as e:
            self.session.rollback()
            logger.error(f"Bulk token issuance failed: {e}")
            report.bulk_update_error = f"Token issuance failed: {e}"
            return

        result = BulkUpdateResult(updated_count=len(items))
        if self.dispatcher is not None and items:
            for outcome in self.dispatcher.send_many(items):
                if outcome.ok:
                    result.emails_sent += 1
                else:
                    result.email_failures.append({
                        "record_id": outcome.record_id,
                        "email": outcome.email,
                        "error": outcome.error,
                    })
        report.bulk_update = result
