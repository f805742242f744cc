from __future__ import annotations

import base64
import logging
from datetime import timedelta

from fleetclaim.core.errors import FleetClaimError
from fleetclaim.domain.models import (
    EvidencePackage,
    IncidentEvent,
    IncidentReport,
    IncidentSeverity,
    ReportRequest,
)
from fleetclaim.providers.pdf.base import PdfRenderer
from fleetclaim.providers.telematics.base import DeviceInfo, DriverInfo, TelematicsApi
from fleetclaim.services.evidence import EvidenceCollector
from fleetclaim.services.share_links import ShareLinkCodec


logger = logging.getLogger(__name__)

BASELINE_RULE_NAME = "Baseline"


def baseline_incident_id(request_id: str) -> str:
    return f"baseline_{request_id}"


def determine_severity(evidence: EvidencePackage) -> IncidentSeverity:
    # Hard deceleration dominates; otherwise fall back to speed at the event.
    decel = evidence.deceleration_mps2
    if decel is not None and abs(decel) > 8:
        return IncidentSeverity.CRITICAL
    if decel is not None and abs(decel) > 5:
        return IncidentSeverity.HIGH
    speed = evidence.speed_at_event_kmh
    if speed is not None and speed > 100:
        return IncidentSeverity.HIGH
    if speed is not None and speed > 60:
        return IncidentSeverity.MEDIUM
    return IncidentSeverity.LOW


def build_summary(rule_name: str | None, vehicle_name: str | None, evidence: EvidencePackage) -> str:
    parts = [rule_name or "Incident"]
    if vehicle_name:
        parts.append(f"involving {vehicle_name}")
    if evidence.speed_at_event_kmh is not None:
        parts.append(f"at {evidence.speed_at_event_kmh:.0f} km/h")
    if evidence.weather_condition:
        parts.append(f"({evidence.weather_condition} conditions)")
    return " ".join(parts)


class ReportGenerator:
    def __init__(
        self,
        collector: EvidenceCollector,
        *,
        share_links: ShareLinkCodec | None = None,
        pdf_renderer: PdfRenderer | None = None,
    ) -> None:
        self._collector = collector
        self._share_links = share_links
        self._pdf_renderer = pdf_renderer

    async def generate(self, api: TelematicsApi, incident: IncidentEvent) -> IncidentReport:
        evidence = await self._collector.collect(api, incident)
        device = await api.get_device(incident.device_id) if incident.device_id else None
        driver = await self._lookup_driver(api, incident.driver_id)
        vehicle_name = device.name if device else None
        report = self._build(
            api,
            incident_id=incident.id,
            device_id=incident.device_id or "",
            device=device,
            driver_id=incident.driver_id,
            driver=driver,
            evidence=evidence,
            incident=incident,
            severity=determine_severity(evidence),
            summary=build_summary(incident.rule_name, vehicle_name, evidence),
        )
        await self._attach_pdf(report)
        return report

    async def generate_baseline(self, api: TelematicsApi, request: ReportRequest) -> IncidentReport:
        # Documents vehicle state over the requested window when no incident matched.
        incident = IncidentEvent(
            id=baseline_incident_id(request.id),
            device_id=request.device_id,
            rule_name=BASELINE_RULE_NAME,
            active_from=request.from_date,
            active_to=request.to_date,
        )
        evidence = await self._collector.collect(api, incident, timedelta(0), timedelta(0))
        device = await api.get_device(request.device_id)
        vehicle_name = (device.name if device else None) or request.device_name or request.device_id
        summary = (
            f"Baseline report for {vehicle_name} from {request.from_date.isoformat()} "
            f"to {request.to_date.isoformat()}"
        )
        report = self._build(
            api,
            incident_id=incident.id,
            device_id=request.device_id,
            device=device,
            driver_id=None,
            driver=None,
            evidence=evidence,
            incident=incident,
            severity=IncidentSeverity.LOW,
            summary=summary,
        )
        report.is_baseline_report = True
        if request.device_name and not report.vehicle_name:
            report.vehicle_name = request.device_name
        await self._attach_pdf(report)
        return report

    def _build(
        self,
        api: TelematicsApi,
        *,
        incident_id: str,
        device_id: str,
        device: DeviceInfo | None,
        driver_id: str | None,
        driver: DriverInfo | None,
        evidence: EvidencePackage,
        incident: IncidentEvent,
        severity: IncidentSeverity,
        summary: str,
    ) -> IncidentReport:
        report = IncidentReport(
            incident_id=incident_id,
            vehicle_id=device_id,
            vehicle_name=device.name if device else None,
            vehicle_vin=device.vin if device else None,
            vehicle_plate=device.plate if device else None,
            driver_id=driver_id,
            driver_name=driver.name if driver else None,
            driver_license_number=driver.license_number if driver else None,
            driver_license_state=driver.license_state if driver else None,
            driver_phone=driver.phone if driver else None,
            driver_email=driver.email if driver else None,
            occurred_at=incident.active_from,
            incident_ended_at=incident.active_to,
            severity=severity,
            summary=summary,
            evidence=evidence,
        )
        if self._share_links is not None:
            # Set before rendering so the document can carry the link.
            report.share_url = self._share_links.share_url(report.id, api.tenant_id)
        return report

    async def _lookup_driver(self, api: TelematicsApi, driver_id: str | None) -> DriverInfo | None:
        if not driver_id:
            return None
        try:
            return await api.get_driver(driver_id)
        except FleetClaimError as exc:
            logger.warning("driver_lookup_failed tenant_id=%s driver_id=%s error=%s", api.tenant_id, driver_id, exc)
            return None

    async def render_pdf(self, report: IncidentReport) -> bytes | None:
        if self._pdf_renderer is None:
            return None
        return await self._pdf_renderer.render(report)

    async def _attach_pdf(self, report: IncidentReport) -> None:
        # The rendered document travels with the transient full report only.
        if self._pdf_renderer is None:
            return
        try:
            pdf = await self._pdf_renderer.render(report)
        except Exception as exc:  # noqa: BLE001 - a missing PDF never blocks the report
            logger.warning("report_pdf_render_failed report_id=%s error=%s", report.id, exc)
            return
        report.pdf_base64 = base64.b64encode(pdf).decode("ascii")
