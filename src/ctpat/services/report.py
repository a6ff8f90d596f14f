"""Inspection report rendering and report email composition.

Reports are rendered from a Jinja2 HTML template and converted to PDF with
WeasyPrint. The same record always renders to the same document: nothing
time-dependent goes into the template context except the record's own
timestamps.

Example:
    renderer = HtmlReportRenderer(app_name=settings.app_name)
    pdf_bytes = renderer.render(record)

    subject, body = compose_report_email(record, app_name=settings.app_name)
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from ctpat.core.errors import CollaboratorUnavailableError

if TYPE_CHECKING:
    from ctpat.db.models import InspectionRecord

logger = logging.getLogger(__name__)

TEMPLATE_ROOT = Path(__file__).parent.parent / "templates"
DEFAULT_TEMPLATE_DIR = TEMPLATE_ROOT / "pdf"
DEFAULT_CSS_PATH = DEFAULT_TEMPLATE_DIR / "styles.css"
EMAIL_TEMPLATE_DIR = TEMPLATE_ROOT / "email"

REPORT_TEMPLATE = "inspection_report.html"
EMAIL_TEMPLATE = "inspection_report.html"


class ReportRenderError(CollaboratorUnavailableError):
    """Raised when a report cannot be rendered."""

    def __init__(self, message: str, *, template_name: str | None = None) -> None:
        self.template_name = template_name
        super().__init__(
            message,
            collaborator="renderer",
            detail={"template": template_name} if template_name else None,
        )


class ReportRenderer(Protocol):
    """Turns a record into document bytes."""

    def render(self, record: InspectionRecord) -> bytes: ...


def format_datetime(value: datetime | None) -> str:
    """Format a timestamp for display (e.g. "2026-10-19 14:05 UTC")."""
    if value is None:
        return ""
    return value.strftime("%Y-%m-%d %H:%M UTC")


def completion_percent(record: InspectionRecord) -> int:
    return math.floor(record.completion_ratio * 100 + 0.5)


def report_filename(record: InspectionRecord) -> str:
    """Attachment filename, e.g. ``CTPAT_TRK-104_2026-10-19.pdf``."""
    truck = record.truck_number or "unknown"
    stamp = (record.completed_at or record.created_at).strftime("%Y-%m-%d")
    return f"CTPAT_{truck}_{stamp}.pdf"


def _build_environment(template_dir: Path) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(template_dir)),
        autoescape=select_autoescape(["html", "xml"]),
    )
    env.filters["format_datetime"] = format_datetime
    return env


def _record_context(record: InspectionRecord, app_name: str) -> dict[str, Any]:
    return {
        "record": record,
        "record_ref": str(record.record_id).replace("-", "")[:8].upper(),
        "completion_percent": completion_percent(record),
        "checked_points": [point for point in record.checklist if point.get("checked")],
        "inspected_at": record.completed_at or record.created_at,
        "app_name": app_name,
    }


class HtmlReportRenderer:
    """PDF report renderer using Jinja2 templates and WeasyPrint.

    Create one instance and reuse it; templates and the stylesheet are
    loaded once.
    """

    def __init__(
        self,
        template_dir: Path | str | None = None,
        css_path: Path | str | None = None,
        *,
        app_name: str = "CTPAT Relay",
    ) -> None:
        self._template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self._css_path = Path(css_path) if css_path else DEFAULT_CSS_PATH
        self._base_url = f"file://{self._template_dir}/"
        self._app_name = app_name
        self._env = _build_environment(self._template_dir)

        logger.debug("Initialized HtmlReportRenderer: template_dir=%s", self._template_dir)

    def render_html(self, record: InspectionRecord) -> str:
        """Render the report template to an HTML string.

        Raises:
            ReportRenderError: If the template is missing or fails.
        """
        try:
            template = self._env.get_template(REPORT_TEMPLATE)
            return template.render(**_record_context(record, self._app_name))
        except TemplateError as e:
            raise ReportRenderError(
                f"Failed to render template: {e}",
                template_name=REPORT_TEMPLATE,
            ) from e

    def render(self, record: InspectionRecord) -> bytes:
        """Render a record to PDF bytes.

        Blocking; call through ``asyncio.to_thread`` from async code.

        Raises:
            ReportRenderError: If rendering fails.
        """
        html_content = self.render_html(record)

        try:
            # Imported here so the API can start on hosts without Pango
            from weasyprint import CSS, HTML

            stylesheets = [CSS(filename=str(self._css_path))] if self._css_path.exists() else None
            document = HTML(string=html_content, base_url=self._base_url).render(
                stylesheets=stylesheets
            )
            pdf_bytes = document.write_pdf()
        except Exception as e:
            raise ReportRenderError(
                f"Failed to generate PDF: {e}",
                template_name=REPORT_TEMPLATE,
            ) from e

        logger.debug(
            "Generated report PDF: record_id=%s, pages=%d, bytes=%d",
            record.record_id,
            len(document.pages),
            len(pdf_bytes),
        )
        return pdf_bytes


_email_env = _build_environment(EMAIL_TEMPLATE_DIR)


def compose_report_email(
    record: InspectionRecord,
    *,
    app_name: str = "CTPAT Relay",
    report_url: str | None = None,
) -> tuple[str, str]:
    """Build the subject and HTML body of the report email.

    Returns:
        Tuple of (subject, html_body).
    """
    subject = f"CTPAT Inspection Report - Truck {record.truck_number or 'N/A'}"
    context = _record_context(record, app_name)
    context["subject"] = subject
    context["report_url"] = report_url if report_url is not None else record.attachment_url
    body = _email_env.get_template(EMAIL_TEMPLATE).render(**context)
    return subject, body
