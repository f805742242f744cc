from __future__ import annotations

from functools import lru_cache

from fleetclaim.providers.credentials.factory import get_credential_store
from fleetclaim.providers.email.factory import get_email_sender
from fleetclaim.providers.pdf.factory import get_pdf_renderer
from fleetclaim.providers.telematics.factory import get_telematics_connector
from fleetclaim.providers.weather.factory import get_weather_provider
from fleetclaim.services.evidence import EvidenceCollector
from fleetclaim.services.poller import optional_collaborator
from fleetclaim.services.report_cache import ReportCache
from fleetclaim.services.sessions import SessionCache
from fleetclaim.services.share_links import ShareLinkCodec
from fleetclaim.services.shared_reports import SharedReportService


# Process-wide collaborators; tests replace them through app.dependency_overrides.


@lru_cache
def get_session_cache() -> SessionCache:
    return SessionCache(get_credential_store(), get_telematics_connector())


@lru_cache
def get_report_cache() -> ReportCache:
    return ReportCache()


@lru_cache
def get_share_link_codec() -> ShareLinkCodec:
    return ShareLinkCodec()


@lru_cache
def get_shared_report_service() -> SharedReportService:
    return SharedReportService(
        get_share_link_codec(),
        get_session_cache(),
        get_report_cache(),
        collector=EvidenceCollector(optional_collaborator(get_weather_provider, "weather")),
        pdf_renderer=optional_collaborator(get_pdf_renderer, "pdf"),
        email_sender=optional_collaborator(get_email_sender, "email"),
    )


def reset_dependencies() -> None:
    # Drop cached collaborators so settings changes take effect (tests, reloads).
    get_session_cache.cache_clear()
    get_report_cache.cache_clear()
    get_share_link_codec.cache_clear()
    get_shared_report_service.cache_clear()
