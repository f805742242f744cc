from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, TypeVar

from fleetclaim.core.config import get_settings, split_csv
from fleetclaim.core.errors import FleetClaimError, PollRunError, ProviderConfigError
from fleetclaim.domain.models import (
    CustomerConfig,
    IncidentEvent,
    IncidentReport,
    IncidentSeverity,
    ReportRequest,
    RequestStatus,
    rule_matches,
)
from fleetclaim.persistence.cursors import FeedCursorStore, get_cursor_store
from fleetclaim.persistence.record_store import RecordStore
from fleetclaim.providers.credentials.base import CredentialStore
from fleetclaim.providers.credentials.factory import get_credential_store
from fleetclaim.providers.email.factory import get_email_sender
from fleetclaim.providers.pdf.factory import get_pdf_renderer
from fleetclaim.providers.telematics.base import TelematicsApi
from fleetclaim.providers.telematics.factory import get_telematics_connector
from fleetclaim.providers.weather.factory import get_weather_provider
from fleetclaim.services.compaction import CompactionBudget, compact_report, default_budget
from fleetclaim.services.evidence import EvidenceCollector
from fleetclaim.services.notifications import NotificationService
from fleetclaim.services.report_generator import ReportGenerator
from fleetclaim.services.requests import RequestLifecycle
from fleetclaim.services.sessions import SessionCache
from fleetclaim.services.share_links import ShareLinkCodec


logger = logging.getLogger(__name__)


def default_customer_config() -> CustomerConfig:
    settings = get_settings()
    return CustomerConfig(
        severity_threshold=IncidentSeverity(settings.default_severity_threshold.lower()),
        auto_generate_rules=split_csv(settings.default_auto_generate_rules),
        manual_request_rules=split_csv(settings.default_manual_request_rules),
    )


@dataclass
class TenantPollResult:
    tenant_id: str
    ok: bool = True
    error: str | None = None
    feed_pages: int = 0
    incidents_seen: int = 0
    incidents_skipped: int = 0
    incidents_failed: int = 0
    reports_generated: int = 0
    requests_processed: int = 0
    requests_failed: int = 0


@dataclass
class PollSummary:
    tenants: list[TenantPollResult] = field(default_factory=list)

    @property
    def failed_tenants(self) -> list[str]:
        return [result.tenant_id for result in self.tenants if not result.ok]

    @property
    def reports_generated(self) -> int:
        return sum(result.reports_generated for result in self.tenants)


class TenantPoller:
    """Single pass over every tenant: incremental feed first, then pending requests.

    Failures are contained at the incident, request and tenant boundaries. The
    feed cursor only advances after a whole page has been handled, so a crash
    mid-page can produce duplicate reports on the next run but never skips events.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionCache,
        cursors: FeedCursorStore,
        generator: ReportGenerator,
        *,
        notifications: NotificationService | None = None,
        budget: CompactionBudget | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._credentials = credentials
        self._sessions = sessions
        self._cursors = cursors
        self._generator = generator
        self._notifications = notifications
        self._budget = budget or default_budget()
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def run(self, timeout_s: float | None = None) -> PollSummary:
        # Bound the whole pass so a stalled vendor cannot wedge the job.
        timeout_s = timeout_s if timeout_s is not None else get_settings().poll_run_timeout_s
        return await asyncio.wait_for(self.run_once(), timeout=timeout_s)

    async def run_once(self) -> PollSummary:
        tenants = await self._credentials.list_tenants()
        summary = PollSummary()
        for tenant_id in tenants:
            summary.tenants.append(await self.poll_tenant(tenant_id))
        logger.info(
            "poll_run_completed tenants=%s failed=%s reports=%s",
            len(tenants),
            len(summary.failed_tenants),
            summary.reports_generated,
        )
        if tenants and len(summary.failed_tenants) == len(tenants):
            raise PollRunError(f"all {len(tenants)} tenants failed")
        return summary

    async def poll_tenant(self, tenant_id: str) -> TenantPollResult:
        result = TenantPollResult(tenant_id=tenant_id)
        try:
            api = await self._sessions.get_session(tenant_id)
            store = RecordStore(api)
            config = await store.get_config() or default_customer_config()
            await self._process_feed(api, store, config, result)
            await self._process_requests(api, store, config, result)
        except Exception as exc:  # noqa: BLE001 - one tenant never aborts the run
            result.ok = False
            result.error = str(exc) or type(exc).__name__
            logger.error("tenant_poll_failed tenant_id=%s error=%s", tenant_id, result.error, exc_info=exc)
        return result

    async def _process_feed(
        self,
        api: TelematicsApi,
        store: RecordStore,
        config: CustomerConfig,
        result: TenantPollResult,
    ) -> None:
        settings = get_settings()
        tenant_id = api.tenant_id
        cursor = await self._cursors.get_cursor(tenant_id)
        # First poll looks back a bounded window instead of replaying history.
        from_date = None
        if cursor is None:
            from_date = self._now() - timedelta(hours=settings.feed_initial_lookback_hours)
        reported: set[str] = set()
        if settings.skip_existing_incident_reports:
            reported = await store.reported_incident_ids()

        for _ in range(max(settings.feed_max_pages, 1)):
            page = await api.get_exception_feed(
                cursor,
                results_limit=settings.feed_results_limit,
                from_date=from_date if cursor is None else None,
            )
            result.feed_pages += 1
            for incident in page.events:
                result.incidents_seen += 1
                if not rule_matches(incident.rule_name, config.auto_generate_rules):
                    logger.debug(
                        "incident_skipped tenant_id=%s incident_id=%s rule=%s reason=rule",
                        tenant_id,
                        incident.id,
                        incident.rule_name,
                    )
                    result.incidents_skipped += 1
                    continue
                if incident.id in reported:
                    result.incidents_skipped += 1
                    continue
                try:
                    await self._generate_and_save(api, store, incident, config)
                except Exception as exc:  # noqa: BLE001 - one incident never blocks the batch
                    result.incidents_failed += 1
                    logger.error(
                        "incident_report_failed tenant_id=%s incident_id=%s error=%s",
                        tenant_id,
                        incident.id,
                        exc,
                        exc_info=exc,
                    )
                    continue
                reported.add(incident.id)
                result.reports_generated += 1

            if page.to_version is None or page.to_version == cursor:
                break
            await self._cursors.set_cursor(tenant_id, page.to_version)
            cursor = page.to_version
            if len(page.events) < settings.feed_results_limit:
                break

    async def _process_requests(
        self,
        api: TelematicsApi,
        store: RecordStore,
        config: CustomerConfig,
        result: TenantPollResult,
    ) -> None:
        lifecycle = RequestLifecycle(store)
        for request in await store.list_requests(RequestStatus.PENDING):
            logger.info(
                "request_processing tenant_id=%s request_id=%s device_id=%s from=%s to=%s",
                api.tenant_id,
                request.id,
                request.device_id,
                request.from_date.isoformat(),
                request.to_date.isoformat(),
            )
            try:
                if await lifecycle.mark_processing(request.id) is None:
                    continue
                found, generated = await self._fulfil_request(api, store, request, config)
                await lifecycle.mark_completed(request.id, found, generated)
                result.requests_processed += 1
                result.reports_generated += generated
            except Exception as exc:  # noqa: BLE001 - failure is recorded on the request itself
                result.requests_failed += 1
                message = str(exc) or type(exc).__name__
                logger.error(
                    "request_failed tenant_id=%s request_id=%s error=%s",
                    api.tenant_id,
                    request.id,
                    message,
                    exc_info=exc,
                )
                try:
                    await lifecycle.mark_failed(request.id, message)
                except FleetClaimError as mark_exc:
                    logger.error(
                        "request_mark_failed_error tenant_id=%s request_id=%s error=%s",
                        api.tenant_id,
                        request.id,
                        mark_exc,
                    )

    async def _fulfil_request(
        self,
        api: TelematicsApi,
        store: RecordStore,
        request: ReportRequest,
        config: CustomerConfig,
    ) -> tuple[int, int]:
        incidents = await api.get_exception_events(
            from_date=request.from_date,
            to_date=request.to_date,
            device_id=request.device_id,
        )
        if request.incident_id:
            matched = [incident for incident in incidents if incident.id == request.incident_id]
        else:
            matched = [incident for incident in incidents if rule_matches(incident.rule_name, config.manual_request_rules)]

        generated = 0
        for incident in matched:
            try:
                await self._generate_and_save(api, store, incident, config)
                generated += 1
            except Exception as exc:  # noqa: BLE001 - count partial success on the request
                logger.warning(
                    "request_incident_failed tenant_id=%s request_id=%s incident_id=%s error=%s",
                    api.tenant_id,
                    request.id,
                    incident.id,
                    exc,
                )
        if not matched and request.force_report:
            baseline = await self._generator.generate_baseline(api, request)
            await self._persist(store, baseline, config)
            generated += 1
        return len(matched), generated

    async def _generate_and_save(
        self,
        api: TelematicsApi,
        store: RecordStore,
        incident: IncidentEvent,
        config: CustomerConfig,
    ) -> IncidentReport:
        logger.info(
            "report_generating tenant_id=%s incident_id=%s rule=%s",
            api.tenant_id,
            incident.id,
            incident.rule_name,
        )
        report = await self._generator.generate(api, incident)
        await self._persist(store, report, config)
        return report

    async def _persist(self, store: RecordStore, report: IncidentReport, config: CustomerConfig) -> None:
        # Only the compacted report is stored; notifications get the full one.
        compacted = compact_report(report, self._budget)
        await store.save_report(compacted)
        logger.info(
            "report_saved tenant_id=%s report_id=%s incident_id=%s severity=%s",
            store.tenant_id,
            report.id,
            report.incident_id,
            report.severity.value,
        )
        if self._notifications is None:
            return
        try:
            await self._notifications.notify(report, config)
        except Exception as exc:  # noqa: BLE001 - notifications never fail report generation
            logger.warning("notifications_failed report_id=%s error=%s", report.id, exc)


T = TypeVar("T")


def optional_collaborator(factory: Callable[[], T], name: str) -> T | None:
    try:
        return factory()
    except ProviderConfigError as exc:
        logger.info("collaborator_disabled name=%s reason=%s", name, exc)
        return None


def build_poller() -> TenantPoller:
    # Wire the poller from settings; optional collaborators degrade to disabled.
    settings = get_settings()
    credentials = get_credential_store()
    sessions = SessionCache(credentials, get_telematics_connector())
    collector = EvidenceCollector(optional_collaborator(get_weather_provider, "weather"))
    generator = ReportGenerator(
        collector,
        share_links=ShareLinkCodec(),
        pdf_renderer=optional_collaborator(get_pdf_renderer, "pdf"),
    )
    notifications = NotificationService(
        optional_collaborator(get_email_sender, "email"),
        enabled=settings.notifications_enabled,
    )
    return TenantPoller(
        credentials,
        sessions,
        get_cursor_store(),
        generator,
        notifications=notifications,
    )
