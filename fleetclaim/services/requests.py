from __future__ import annotations

import logging
from typing import Any

from fleetclaim.domain.models import ReportRequest, RequestStatus
from fleetclaim.persistence.envelope import Envelope, EnvelopeType
from fleetclaim.persistence.record_store import RecordStore


logger = logging.getLogger(__name__)


# Pending may skip Processing: when the Processing write itself fails the poller
# still records the outcome against the untouched Pending copy.
ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {RequestStatus.PROCESSING, RequestStatus.COMPLETED, RequestStatus.FAILED}
    ),
    RequestStatus.PROCESSING: frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}

_STATUS_RANK = {
    RequestStatus.PENDING: 0,
    RequestStatus.PROCESSING: 1,
    RequestStatus.COMPLETED: 2,
    RequestStatus.FAILED: 2,
}


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class RequestLifecycle:
    """Forward-only status updates for report requests.

    Each transition re-reads the request by scanning the tenant's records, then
    removes every stored copy before adding the updated one.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def _transition(
        self, request_id: str, target: RequestStatus, **changes: Any
    ) -> ReportRequest | None:
        matches = await self._store.find_envelopes(EnvelopeType.REPORT_REQUEST, request_id)
        if not matches:
            # Deleted concurrently by a user; nothing to update.
            logger.info(
                "request_transition_skipped tenant_id=%s request_id=%s target=%s reason=not_found",
                self._store.tenant_id,
                request_id,
                target.value,
            )
            return None
        requests = [envelope.payload for _, envelope in matches if isinstance(envelope.payload, ReportRequest)]
        if not requests:
            return None
        # Stray duplicates may disagree; the most advanced status is authoritative.
        current = max(requests, key=lambda request: _STATUS_RANK[request.status])
        if not can_transition(current.status, target):
            logger.warning(
                "request_transition_rejected tenant_id=%s request_id=%s from=%s to=%s",
                self._store.tenant_id,
                request_id,
                current.status.value,
                target.value,
            )
            return None
        updated = current.model_copy(update={"status": target, **changes})
        await self._store.replace_envelope(
            [physical_id for physical_id, _ in matches],
            Envelope.for_request(updated),
        )
        logger.info(
            "request_transitioned tenant_id=%s request_id=%s from=%s to=%s",
            self._store.tenant_id,
            request_id,
            current.status.value,
            target.value,
        )
        return updated

    async def mark_processing(self, request_id: str) -> ReportRequest | None:
        return await self._transition(request_id, RequestStatus.PROCESSING)

    async def mark_completed(
        self, request_id: str, incidents_found: int, reports_generated: int
    ) -> ReportRequest | None:
        return await self._transition(
            request_id,
            RequestStatus.COMPLETED,
            incidents_found=incidents_found,
            reports_generated=reports_generated,
            error_message=None,
        )

    async def mark_failed(self, request_id: str, error_message: str) -> ReportRequest | None:
        return await self._transition(request_id, RequestStatus.FAILED, error_message=error_message)
