"""
Tests for utility modules: invoice_numbers, dates and pdf_parser.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from studioflow.utils.dates import coerce_dt, to_epoch, to_iso
from studioflow.utils.invoice_numbers import (
    format_invoice_number,
    next_invoice_number,
    parse_sequence,
)
from studioflow.utils.pdf_parser import PDFParseError, count_pdf_pages, is_readable_pdf


def _minimal_pdf() -> bytes:
    """Build a one-page PDF with a correct xref table."""
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 200 200] >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_at = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


class TestInvoiceNumbers:
    """Test INV DDMMYY-XX numbering."""

    def test_format_pads_day_month_and_sequence(self):
        assert format_invoice_number(date(2026, 1, 9), 1) == "INV 090126-01"
        assert format_invoice_number(date(2026, 12, 31), 12) == "INV 311226-12"

    def test_first_number_of_the_day(self):
        assert next_invoice_number([], date(2026, 1, 9)) == "INV 090126-01"

    def test_next_number_skips_other_days_and_junk(self):
        existing = ["INV 090126-01", "INV 090126-03", "INV 080126-07", "draft", None]
        assert next_invoice_number(existing, datetime(2026, 1, 9, 15, 0)) == "INV 090126-04"

    def test_parse_sequence_other_day_is_zero(self):
        assert parse_sequence("INV 090126-05", date(2026, 1, 9)) == 5
        assert parse_sequence("INV 090126-05", date(2026, 1, 10)) == 0
        assert parse_sequence("INV 090126-xx", date(2026, 1, 9)) == 0


class TestDates:
    """Test datetime coercion helpers."""

    def test_coerce_javascript_iso_string(self):
        assert coerce_dt("2026-01-09T10:05:00.000Z") == datetime(2026, 1, 9, 10, 5, tzinfo=timezone.utc)

    def test_coerce_naive_datetime_is_utc(self):
        assert coerce_dt(datetime(2026, 1, 9, 10, 5)).tzinfo == timezone.utc

    @pytest.mark.parametrize("value", [None, "", "not a date", 42])
    def test_coerce_invalid_returns_none(self, value):
        assert coerce_dt(value) is None

    def test_offsets_are_preserved(self):
        dt = coerce_dt("2026-01-09T11:00:00+01:00")
        assert dt.utcoffset() == timedelta(hours=1)
        assert to_epoch(dt) == to_epoch(datetime(2026, 1, 9, 10, 0, tzinfo=timezone.utc))

    def test_to_iso(self):
        assert to_iso(datetime(2026, 1, 9, 10, 0, tzinfo=timezone.utc)) == "2026-01-09T10:00:00+00:00"
        assert to_iso(None) is None


class TestPDFParser:
    """Test signed PDF readability checks."""

    def test_count_pages_of_valid_pdf(self, tmp_path):
        path = tmp_path / "signed.pdf"
        path.write_bytes(_minimal_pdf())

        assert count_pdf_pages(path) == 1
        assert is_readable_pdf(str(path)) is True

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            count_pdf_pages(tmp_path / "missing.pdf")
        assert is_readable_pdf(tmp_path / "missing.pdf") is False

    def test_non_pdf_is_not_readable(self, tmp_path):
        path = tmp_path / "signed.pdf"
        path.write_text("this is not a pdf")

        with pytest.raises(PDFParseError):
            count_pdf_pages(path)
        assert is_readable_pdf(path) is False

    def test_directory_is_not_readable(self, tmp_path):
        with pytest.raises(PDFParseError, match="not a file"):
            count_pdf_pages(tmp_path)
