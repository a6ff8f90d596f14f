"""Tests for report rendering and report email composition.

Tests cover:
- HTML report content and deterministic output
- PDF generation through WeasyPrint (mocked)
- Render failures mapped to ReportRenderError
- Report email subject and body
- Attachment filenames
"""

import sys
import uuid
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from ctpat.db.models import InspectionRecord, RecordStatus
from ctpat.services.report import (
    HtmlReportRenderer,
    ReportRenderError,
    completion_percent,
    compose_report_email,
    format_datetime,
    report_filename,
)


@pytest.fixture
def record() -> InspectionRecord:
    """An unsaved submitted record with 2 of 3 points checked."""
    created = datetime(2026, 10, 19, 13, 0, tzinfo=UTC)
    return InspectionRecord(
        record_id=uuid.UUID("6f1c2a40-8d3e-4b7a-9c55-0e2d7f4a1b90"),
        status=RecordStatus.SUBMITTED,
        truck_number="TRK-104",
        trailer_number="TRL-88",
        seal_number="SEAL-5521",
        inspector_name="Dana Ortiz",
        verified_by_name="Sam Lee",
        notes="Minor rust on <rear> bumper",
        checklist=[
            {"point_id": "bumper", "label": "Bumper", "checked": True},
            {"point_id": "engine", "label": "Engine", "checked": True},
            {"point_id": "tires", "label": "Tires", "checked": False},
        ],
        completion_ratio=2 / 3,
        created_at=created,
        updated_at=created,
        completed_at=datetime(2026, 10, 19, 14, 5, tzinfo=UTC),
    )


@pytest.fixture
def renderer() -> HtmlReportRenderer:
    return HtmlReportRenderer(app_name="CTPAT Relay")


class TestHelpers:
    """Tests for formatting helpers."""

    def test_format_datetime(self):
        assert format_datetime(datetime(2026, 10, 19, 14, 5, tzinfo=UTC)) == "2026-10-19 14:05 UTC"
        assert format_datetime(None) == ""

    def test_completion_percent_rounds_half_up(self, record):
        assert completion_percent(record) == 67
        record.completion_ratio = 0.5
        assert completion_percent(record) == 50
        record.completion_ratio = 0.125
        assert completion_percent(record) == 13

    def test_report_filename_uses_completion_date(self, record):
        assert report_filename(record) == "CTPAT_TRK-104_2026-10-19.pdf"

    def test_report_filename_without_truck(self, record):
        record.truck_number = None
        record.completed_at = None
        assert report_filename(record) == "CTPAT_unknown_2026-10-19.pdf"


class TestRenderHtml:
    """Tests for HtmlReportRenderer.render_html."""

    def test_contains_record_details(self, renderer, record):
        html = renderer.render_html(record)

        assert "Reference 6F1C2A40" in html
        assert "SUBMITTED" in html
        assert "TRK-104" in html
        assert "SEAL-5521" in html
        assert "67% complete" in html
        assert "Sam Lee" in html
        assert "2026-10-19 14:05 UTC" in html

    def test_checklist_order_preserved(self, renderer, record):
        html = renderer.render_html(record)
        assert html.index("Bumper") < html.index("Engine") < html.index("Tires")

    def test_notes_escaped(self, renderer, record):
        html = renderer.render_html(record)
        assert "&lt;rear&gt;" in html
        assert "<rear>" not in html

    def test_deterministic(self, renderer, record):
        assert renderer.render_html(record) == renderer.render_html(record)

    def test_missing_template(self, record, tmp_path):
        renderer = HtmlReportRenderer(template_dir=tmp_path)
        with pytest.raises(ReportRenderError) as exc_info:
            renderer.render_html(record)
        assert exc_info.value.collaborator == "renderer"
        assert exc_info.value.template_name == "inspection_report.html"


class TestRenderPdf:
    """Tests for HtmlReportRenderer.render with WeasyPrint mocked."""

    def test_render_returns_pdf_bytes(self, renderer, record):
        weasyprint = MagicMock()
        weasyprint.HTML.return_value.render.return_value.write_pdf.return_value = b"%PDF-1.7"

        with patch.dict(sys.modules, {"weasyprint": weasyprint}):
            pdf = renderer.render(record)

        assert pdf == b"%PDF-1.7"
        html_kwargs = weasyprint.HTML.call_args.kwargs
        assert "TRK-104" in html_kwargs["string"]
        assert html_kwargs["base_url"].startswith("file://")
        weasyprint.CSS.assert_called_once()

    def test_weasyprint_failure(self, renderer, record):
        weasyprint = MagicMock()
        weasyprint.HTML.side_effect = OSError("cannot load library 'libpango'")

        with patch.dict(sys.modules, {"weasyprint": weasyprint}):
            with pytest.raises(ReportRenderError, match="Failed to generate PDF"):
                renderer.render(record)


class TestComposeReportEmail:
    """Tests for the report email."""

    def test_subject(self, record):
        subject, _ = compose_report_email(record)
        assert subject == "CTPAT Inspection Report - Truck TRK-104"

    def test_subject_without_truck(self, record):
        record.truck_number = None
        subject, _ = compose_report_email(record)
        assert subject == "CTPAT Inspection Report - Truck N/A"

    def test_body_lists_checked_points_only(self, record):
        _, body = compose_report_email(record)

        assert "Bumper" in body
        assert "Engine" in body
        assert "Tires" not in body
        assert "67% Complete" in body

    def test_body_links_report(self, record):
        record.attachment_url = "https://reports.ctpat.test/reports/abc-r.pdf"

        _, body = compose_report_email(record, app_name="Yard Relay")

        assert 'href="https://reports.ctpat.test/reports/abc-r.pdf"' in body
        assert "automated message from Yard Relay" in body

    def test_body_without_report(self, record):
        _, body = compose_report_email(record)
        assert "View Full PDF Report" not in body
