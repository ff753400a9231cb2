"""
Tests for roster export.
"""

import csv
import io
import pytest
from datetime import datetime, timezone

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from openpyxl import load_workbook

from errors import ValidationError
from exporter import EXPORT_COLUMNS, export_filename, export_records

HEADERS = [
    "ID", "Client Number", "First Name", "Last Name", "Phone Number", "Alt Number",
    "Address", "Email", "Status", "Group and Template", "Has Changes",
    "Last Updated", "Created At",
]


class TestExport:

    def test_column_headers(self):
        assert [c[0] for c in EXPORT_COLUMNS] == HEADERS

    def test_filename(self):
        now = datetime(2026, 5, 4, 3, 2, 1, tzinfo=timezone.utc)
        assert export_filename("csv", now) == "client_records_20260504_030201.csv"

    def test_csv(self, make_record):
        records = [make_record(group_template="G1"), make_record(client_number="C-2", email="b@example.com")]
        content, media_type, filename = export_records(records, "csv")

        assert media_type.startswith("text/csv")
        assert filename.endswith(".csv")
        rows = list(csv.reader(io.StringIO(content.decode("utf-8-sig"))))
        assert rows[0] == HEADERS
        assert len(rows) == 3
        assert rows[1][1] == "C-1001"
        assert rows[1][5] == ""
        assert rows[1][8] == "pending"
        assert rows[1][9] == "G1"
        assert rows[1][10] == "No"

    def test_xlsx(self, make_record):
        content, media_type, filename = export_records([make_record()], "XLSX")

        assert "spreadsheetml" in media_type
        assert filename.endswith(".xlsx")
        ws = load_workbook(io.BytesIO(content)).active
        assert [cell.value for cell in ws[1]] == HEADERS
        assert ws["B2"].value == "C-1001"
        assert ws["A1"].font.bold is True
        assert ws.freeze_panes == "A2"

    def test_empty_roster(self):
        content, _, _ = export_records([], "csv")
        rows = list(csv.reader(io.StringIO(content.decode("utf-8-sig"))))
        assert rows == [HEADERS]

    @pytest.mark.parametrize("fmt", ["pdf", "", None])
    def test_unsupported_format(self, fmt):
        with pytest.raises(ValidationError) as exc:
            export_records([], fmt)
        assert exc.value.field == "format"
        assert exc.value.status_code == 422
