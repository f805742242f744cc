from __future__ import annotations

import logging
from datetime import datetime

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import MalformedRecordError, RecordTooLargeError
from fleetclaim.domain.models import CustomerConfig, IncidentReport, ReportRequest, RequestStatus
from fleetclaim.persistence.envelope import (
    Envelope,
    EnvelopeType,
    decode_envelope,
    encode_envelope,
    envelope_size,
)
from fleetclaim.providers.telematics.base import TelematicsApi


logger = logging.getLogger(__name__)


class RecordStore:
    """Tagged envelopes over the vendor's flat record API.

    The backend only supports search, add and remove, so an update is always
    remove-then-add. A crash between the two loses the record; that window is
    accepted for request status updates and never used for report creation.
    """

    def __init__(self, api: TelematicsApi, *, tag: str | None = None, max_record_bytes: int | None = None) -> None:
        settings = get_settings()
        self._api = api
        self._tag = tag or settings.add_in_id
        self._max_record_bytes = max_record_bytes or settings.record_max_bytes

    @property
    def tenant_id(self) -> str:
        return self._api.tenant_id

    async def list_envelopes(self, envelope_type: EnvelopeType | None = None) -> list[tuple[str, Envelope]]:
        records = await self._api.search_records(self._tag)
        envelopes: list[tuple[str, Envelope]] = []
        for record in records:
            try:
                envelope = decode_envelope(record.details)
            except MalformedRecordError as exc:
                # One corrupt record must not block the rest of the tenant.
                logger.warning(
                    "record_malformed tenant_id=%s record_id=%s error=%s",
                    self.tenant_id,
                    record.id,
                    exc,
                )
                continue
            if envelope_type is None or envelope.type == envelope_type:
                envelopes.append((record.id, envelope))
        return envelopes

    async def add_envelope(self, envelope: Envelope) -> str:
        size = envelope_size(envelope)
        if size > self._max_record_bytes:
            raise RecordTooLargeError(
                f"{envelope.type.value} {envelope.logical_id} is {size} bytes (limit {self._max_record_bytes})"
            )
        return await self._api.add_record(self._tag, encode_envelope(envelope))

    async def remove_envelope(self, physical_id: str) -> None:
        await self._api.remove_record(physical_id)

    async def replace_envelope(self, old_ids: list[str], envelope: Envelope) -> str:
        # Remove every old copy first so at most one physical record survives.
        for physical_id in old_ids:
            await self.remove_envelope(physical_id)
        return await self.add_envelope(envelope)

    async def find_envelopes(self, envelope_type: EnvelopeType, logical_id: str) -> list[tuple[str, Envelope]]:
        # No secondary index exists; scan the tenant's records.
        return [
            (physical_id, envelope)
            for physical_id, envelope in await self.list_envelopes(envelope_type)
            if envelope.logical_id == logical_id
        ]

    async def list_reports(self, since: datetime | None = None) -> list[IncidentReport]:
        reports = [
            envelope.payload
            for _, envelope in await self.list_envelopes(EnvelopeType.REPORT)
            if isinstance(envelope.payload, IncidentReport)
        ]
        if since is not None:
            reports = [report for report in reports if report.generated_at >= since]
        return sorted(reports, key=lambda report: report.occurred_at, reverse=True)

    async def find_report(self, report_id: str) -> IncidentReport | None:
        for _, envelope in await self.find_envelopes(EnvelopeType.REPORT, report_id):
            if isinstance(envelope.payload, IncidentReport):
                return envelope.payload
        return None

    async def reported_incident_ids(self) -> set[str]:
        return {report.incident_id for report in await self.list_reports() if report.incident_id}

    async def list_requests(self, status: RequestStatus | None = None) -> list[ReportRequest]:
        requests = [
            envelope.payload
            for _, envelope in await self.list_envelopes(EnvelopeType.REPORT_REQUEST)
            if isinstance(envelope.payload, ReportRequest)
        ]
        if status is not None:
            requests = [request for request in requests if request.status == status]
        return sorted(requests, key=lambda request: request.requested_at)

    async def find_request(self, request_id: str) -> ReportRequest | None:
        for _, envelope in await self.find_envelopes(EnvelopeType.REPORT_REQUEST, request_id):
            if isinstance(envelope.payload, ReportRequest):
                return envelope.payload
        return None

    async def get_config(self) -> CustomerConfig | None:
        for _, envelope in await self.list_envelopes(EnvelopeType.CONFIG):
            if isinstance(envelope.payload, CustomerConfig):
                return envelope.payload
        return None

    async def save_report(self, report: IncidentReport) -> str:
        return await self.add_envelope(Envelope.for_report(report))

    async def save_request(self, request: ReportRequest) -> str:
        return await self.add_envelope(Envelope.for_request(request))

    async def save_config(self, config: CustomerConfig) -> str:
        existing = [physical_id for physical_id, _ in await self.list_envelopes(EnvelopeType.CONFIG)]
        return await self.replace_envelope(existing, Envelope.for_config(config))
