from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import timedelta

from fleetclaim.core.errors import (
    FleetClaimError,
    InvalidTokenError,
    NotFoundError,
    ProviderConfigError,
    UpstreamUnavailableError,
)
from fleetclaim.domain.models import IncidentReport
from fleetclaim.persistence.record_store import RecordStore
from fleetclaim.providers.email.base import EmailSender
from fleetclaim.providers.pdf.base import PdfRenderer
from fleetclaim.services.evidence import EvidenceCollector
from fleetclaim.services.notifications import report_email
from fleetclaim.services.report_cache import ReportCache
from fleetclaim.services.sessions import SessionCache
from fleetclaim.services.share_links import ShareLinkCodec, ShareToken


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
# Vendor timestamps are second-granular; widen the search a little around occurred_at.
_INCIDENT_LOOKUP_SLACK = timedelta(seconds=5)
_MAX_MESSAGE_CHARS = 2000


def is_valid_email(value: str | None) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value.strip()) is not None


class SharedReportService:
    """Resolves share tokens into stored reports for the public endpoints.

    Invalid tokens and missing reports raise the same family of errors so the
    HTTP layer can answer both with an indistinguishable 404.
    """

    def __init__(
        self,
        codec: ShareLinkCodec,
        sessions: SessionCache,
        cache: ReportCache,
        *,
        collector: EvidenceCollector | None = None,
        pdf_renderer: PdfRenderer | None = None,
        email_sender: EmailSender | None = None,
    ) -> None:
        self._codec = codec
        self._sessions = sessions
        self._cache = cache
        self._collector = collector
        self._pdf_renderer = pdf_renderer
        self._email_sender = email_sender

    def parse_token(self, token: str) -> ShareToken:
        parsed = self._codec.decode(token)
        if parsed is None:
            raise InvalidTokenError("share token rejected")
        return parsed

    async def get_report(self, token: str) -> IncidentReport:
        parsed = self.parse_token(token)
        cached = await self._cache.get(parsed.tenant_id, parsed.report_id)
        if cached is not None:
            return cached
        api = await self._sessions.get_session(parsed.tenant_id)
        report = await RecordStore(api).find_report(parsed.report_id)
        if report is None:
            raise NotFoundError(f"report {parsed.report_id} not found")
        await self._cache.set(parsed.tenant_id, parsed.report_id, report)
        logger.info("shared_report_loaded tenant_id=%s report_id=%s", parsed.tenant_id, parsed.report_id)
        return report

    async def render_pdf(self, token: str) -> tuple[IncidentReport, bytes]:
        if self._pdf_renderer is None:
            raise ProviderConfigError("PDF rendering is not configured")
        parsed = self.parse_token(token)
        report = await self.get_report(token)
        # The stored report is compacted; rebuild full evidence for the document when possible.
        full = await self._with_full_evidence(parsed.tenant_id, report)
        pdf = await self._pdf_renderer.render(full)
        return full, pdf

    async def _with_full_evidence(self, tenant_id: str, report: IncidentReport) -> IncidentReport:
        if self._collector is None or report.is_baseline_report or not report.vehicle_id:
            return report
        try:
            api = await self._sessions.get_session(tenant_id)
            incidents = await api.get_exception_events(
                from_date=report.occurred_at - _INCIDENT_LOOKUP_SLACK,
                to_date=report.occurred_at + _INCIDENT_LOOKUP_SLACK,
                device_id=report.vehicle_id,
            )
            incident = next((item for item in incidents if item.id == report.incident_id), None)
            if incident is None:
                return report
            evidence = await self._collector.collect(api, incident)
        except FleetClaimError as exc:
            logger.warning(
                "shared_report_evidence_fallback tenant_id=%s report_id=%s error=%s",
                tenant_id,
                report.id,
                exc,
            )
            return report
        # Keep stored fields the compactor never touches (weather, notes) if the rebuild lacks them.
        if evidence.weather_condition is None:
            evidence.weather_condition = report.evidence.weather_condition
            evidence.temperature_celsius = report.evidence.temperature_celsius
        return report.model_copy(update={"evidence": evidence})

    async def send_email(self, token: str, recipient: str, message: str | None = None) -> IncidentReport:
        if self._email_sender is None:
            raise ProviderConfigError("Email delivery is not configured")
        if not is_valid_email(recipient):
            raise ValueError("Valid email address required")
        report = await self.get_report(token)
        email = report_email(report, recipient.strip())
        note = (message or "").strip()[:_MAX_MESSAGE_CHARS]
        if note:
            email = replace(email, text_body=f"{note}\n\n{email.text_body}")
        try:
            await self._email_sender.send(email)
        except FleetClaimError as exc:
            logger.warning("shared_report_email_failed report_id=%s error=%s", report.id, exc)
            raise UpstreamUnavailableError("email delivery failed") from exc
        logger.info("shared_report_emailed report_id=%s", report.id)
        return report
