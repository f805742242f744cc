from __future__ import annotations

import asyncio
from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from fleetclaim.domain.models import IncidentReport


_SEVERITY_COLORS = {
    "critical": "#c53030",
    "high": "#dd6b20",
    "medium": "#d69e2e",
    "low": "#38a169",
}


def _fmt(value: object, suffix: str = "") -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float):
        return f"{value:.1f}{suffix}"
    return f"{value}{suffix}"


def report_lines(report: IncidentReport) -> list[tuple[str, str]]:
    """Label/value rows shared by the PDF summary table."""
    evidence = report.evidence
    impact = f"{_fmt(evidence.impact_g_force, ' g')} {evidence.impact_direction or ''}".rstrip()
    return [
        ("Report", report.id),
        ("Incident", report.incident_id or "n/a"),
        ("Severity", report.severity.value.title()),
        ("Occurred", report.occurred_at.isoformat()),
        ("Generated", report.generated_at.isoformat()),
        ("Vehicle", report.vehicle_name or report.vehicle_id),
        ("VIN", _fmt(report.vehicle_vin)),
        ("Plate", _fmt(report.vehicle_plate)),
        ("Driver", _fmt(report.driver_name)),
        ("License", _fmt(report.driver_license_number)),
        ("Speed at event", _fmt(evidence.speed_at_event_kmh, " km/h")),
        ("Max speed", _fmt(evidence.max_speed_kmh, " km/h")),
        ("Deceleration", _fmt(evidence.deceleration_mps2, " m/s2")),
        ("Impact", impact),
        ("Weather", f"{_fmt(evidence.weather_condition)} {_fmt(evidence.temperature_celsius, ' C')}"),
        ("Light", _fmt(evidence.light_condition)),
        ("GPS points", str(len(evidence.gps_trail))),
        ("Hard events", str(len(evidence.hard_events_before_incident))),
    ]


def _grid_style(header: bool) -> TableStyle:
    commands = [
        ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#cbd5e0")),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
    ]
    if header:
        commands += [
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1a365d")),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ]
    else:
        commands.append(("BACKGROUND", (0, 0), (0, -1), colors.HexColor("#edf2f7")))
    return TableStyle(commands)


def render_report_pdf(report: IncidentReport) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=LETTER,
        leftMargin=40,
        rightMargin=40,
        topMargin=40,
        bottomMargin=40,
        title=f"Incident Report {report.id}",
        author="FleetClaim",
    )
    styles = getSampleStyleSheet()
    badge_style = ParagraphStyle(
        "SeverityBadge",
        parent=styles["Heading3"],
        textColor=colors.HexColor(_SEVERITY_COLORS.get(report.severity.value, "#4a5568")),
    )
    # Paragraph parses a mini-markup, so free text is XML-escaped first.
    elements = [
        Paragraph("FleetClaim Incident Report", styles["Title"]),
        Paragraph(escape(report.severity.value.title()), badge_style),
        Paragraph(escape(report.summary), styles["BodyText"]),
        Spacer(1, 12),
    ]
    if report.is_baseline_report:
        elements.append(Paragraph("Baseline report: no incident matched the requested window.", styles["Italic"]))

    summary = Table([list(row) for row in report_lines(report)], colWidths=[120, 400])
    summary.setStyle(_grid_style(header=False))
    elements += [summary, Spacer(1, 12)]

    trail = report.evidence.gps_trail
    if trail:
        elements.append(Paragraph("GPS trail", styles["Heading2"]))
        rows = [["Timestamp", "Latitude", "Longitude", "Speed"]]
        rows += [
            [point.timestamp.isoformat(), f"{point.latitude:.5f}", f"{point.longitude:.5f}", _fmt(point.speed_kmh, " km/h")]
            for point in trail
        ]
        table = Table(rows, repeatRows=1)
        table.setStyle(_grid_style(header=True))
        elements.append(table)

    if report.notes:
        elements += [Spacer(1, 12), Paragraph("Notes", styles["Heading2"]), Paragraph(escape(report.notes), styles["BodyText"])]

    doc.build(elements)
    return buffer.getvalue()


class ReportlabPdfRenderer:
    async def render(self, report: IncidentReport) -> bytes:
        # reportlab is synchronous; keep layout off the event loop.
        return await asyncio.to_thread(render_report_pdf, report)
