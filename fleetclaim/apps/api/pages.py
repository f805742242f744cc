from __future__ import annotations

from fleetclaim.core.templates import render_template
from fleetclaim.domain.models import IncidentReport, IncidentSeverity


_SEVERITY_COLORS = {
    IncidentSeverity.CRITICAL: "#c53030",
    IncidentSeverity.HIGH: "#dd6b20",
    IncidentSeverity.MEDIUM: "#d69e2e",
    IncidentSeverity.LOW: "#38a169",
}

# Share pages embed no third-party scripts; inline styles only.
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'self'; style-src 'self' 'unsafe-inline'; img-src 'self' data: https:",
    "Cache-Control": "private, max-age=60",
}


def _fmt(value: float | None, unit: str) -> str | None:
    return None if value is None else f"{value:.1f} {unit}"


def _present(pairs: list[tuple[str, object]]) -> list[tuple[str, object]]:
    return [(label, value) for label, value in pairs if value is not None]


def render_report_page(report: IncidentReport, token: str) -> str:
    evidence = report.evidence
    vehicle_rows = _present(
        [
            ("Vehicle", report.vehicle_name or report.vehicle_id),
            ("VIN", report.vehicle_vin),
            ("Plate", report.vehicle_plate),
            ("Driver", report.driver_name or "Unknown"),
        ]
    )
    metric_rows = _present(
        [
            ("Speed at event", _fmt(evidence.speed_at_event_kmh, "km/h") or "n/a"),
            ("Max speed", _fmt(evidence.max_speed_kmh, "km/h") or "n/a"),
            ("Average speed", _fmt(evidence.avg_speed_kmh, "km/h") or "n/a"),
            ("Deceleration", _fmt(evidence.deceleration_mps2, "m/s²") or "n/a"),
            ("Weather", evidence.weather_condition),
            ("Temperature", _fmt(evidence.temperature_celsius, "°C")),
            ("Light", evidence.light_condition),
            ("Seatbelt fastened", evidence.seatbelt_fastened),
            ("Headlights on", evidence.headlights_on),
            ("Prior incidents (30 days)", evidence.driver_incident_count_last_30_days),
        ]
    )
    # Map widgets read the trail from a data attribute; tojson keeps it HTML-safe.
    trail = [
        {"lat": point.latitude, "lng": point.longitude, "speed": point.speed_kmh}
        for point in evidence.gps_trail
    ]
    return render_template(
        "report_page.html",
        report=report,
        evidence=evidence,
        token=token,
        severity_color=_SEVERITY_COLORS.get(report.severity, "#4a5568"),
        vehicle_rows=vehicle_rows,
        metric_rows=metric_rows,
        trail=trail,
    )


def render_error_page(message: str) -> str:
    return render_template("error_page.html", message=message)
