from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import ReportTooLargeError
from fleetclaim.domain.models import (
    DiagnosticSnapshot,
    EvidencePackage,
    GpsPoint,
    HardEvent,
    IncidentReport,
)
from fleetclaim.persistence.envelope import Envelope, envelope_size
from fleetclaim.services.evidence import nearest_point_index


logger = logging.getLogger(__name__)

MIN_GPS_POINTS = 3
_SUMMARY_LIMITS = (500, 200, 80)
_NOTES_LIMITS = (1000, 200, 0)


@dataclass(frozen=True)
class CompactionBudget:
    max_bytes: int
    max_gps_points: int
    max_hard_events: int
    max_diagnostics: int


def default_budget() -> CompactionBudget:
    settings = get_settings()
    return CompactionBudget(
        max_bytes=settings.record_max_bytes,
        max_gps_points=settings.compact_max_gps_points,
        max_hard_events=settings.compact_max_hard_events,
        max_diagnostics=settings.compact_max_diagnostics,
    )


def sample_gps_trail(trail: list[GpsPoint], occurred_at: datetime, max_points: int) -> list[GpsPoint]:
    """Deterministically downsample a trail to exactly ``max_points`` points.

    The first point, the last point and the point nearest ``occurred_at`` always
    survive; the remaining slots are evenly strided over the other interior points.
    """
    if max_points < MIN_GPS_POINTS:
        raise ValueError(f"max_points must be at least {MIN_GPS_POINTS}")
    if len(trail) <= max_points:
        return list(trail)
    ordered = sorted(trail, key=lambda point: point.timestamp)
    last_idx = len(ordered) - 1
    incident_idx = nearest_point_index(ordered, occurred_at)
    keep = {0, last_idx}
    if incident_idx is not None:
        keep.add(incident_idx)
    interior = [idx for idx in range(1, last_idx) if idx not in keep]
    remaining = max_points - len(keep)
    for k in range(remaining):
        keep.add(interior[(k * len(interior)) // remaining])
    return [ordered[idx] for idx in sorted(keep)]


def rank_hard_events(events: list[HardEvent], occurred_at: datetime, limit: int) -> list[HardEvent]:
    # Nearest in time to the incident first.
    ranked = sorted(events, key=lambda event: (abs((event.timestamp - occurred_at).total_seconds()), event.timestamp))
    return ranked[:limit]


def rank_diagnostics(diagnostics: list[DiagnosticSnapshot], limit: int) -> list[DiagnosticSnapshot]:
    # Most recent first; undated snapshots sort last, ties broken by code.
    dated = sorted(
        (item for item in diagnostics if item.recorded_at is not None),
        key=lambda item: (-item.recorded_at.timestamp(), item.code),
    )
    undated = sorted((item for item in diagnostics if item.recorded_at is None), key=lambda item: item.code)
    return (dated + undated)[:limit]


def _truncate(text: str | None, limit: int) -> str | None:
    if text is None or len(text) <= limit:
        return text
    if limit <= 0:
        return None
    return text[: max(limit - 3, 0)] + "..."


def _compacted_evidence(
    evidence: EvidencePackage,
    occurred_at: datetime,
    *,
    gps_points: int,
    hard_events: int,
    diagnostics: int,
) -> EvidencePackage:
    # Full-only fields (accelerometer samples, HOS, photos) never reach storage.
    return evidence.model_copy(
        update={
            "gps_trail": sample_gps_trail(evidence.gps_trail, occurred_at, gps_points),
            "hard_events_before_incident": rank_hard_events(evidence.hard_events_before_incident, occurred_at, hard_events),
            "diagnostics": rank_diagnostics(evidence.diagnostics, diagnostics),
            "accelerometer_events": [],
            "driver_hos_status": None,
            "photo_urls": [],
        }
    )


def _fits(report: IncidentReport, max_bytes: int) -> bool:
    return envelope_size(Envelope.for_report(report)) <= max_bytes


def compact_report(report: IncidentReport, budget: CompactionBudget | None = None) -> IncidentReport:
    """Reduce a report so its stored envelope fits the record ceiling.

    Pure and deterministic. Rendered PDF bytes are always dropped; if the sampled
    report is still too large the GPS budget is halved (down to three points),
    then list fields are emptied, then summary and notes are truncated.
    """
    budget = budget or default_budget()
    occurred_at = report.occurred_at
    base = report.model_copy(update={"pdf_base64": None})

    gps_points = max(budget.max_gps_points, MIN_GPS_POINTS)
    hard_events = budget.max_hard_events
    diagnostics = budget.max_diagnostics

    while True:
        evidence = _compacted_evidence(
            report.evidence,
            occurred_at,
            gps_points=gps_points,
            hard_events=hard_events,
            diagnostics=diagnostics,
        )
        candidate = base.model_copy(update={"evidence": evidence})
        if _fits(candidate, budget.max_bytes):
            return candidate
        if gps_points <= MIN_GPS_POINTS:
            break
        gps_points = max(gps_points // 2, MIN_GPS_POINTS)

    # Minimal lists: only the three anchor points survive.
    candidate = candidate.model_copy(
        update={
            "evidence": candidate.evidence.model_copy(
                update={"hard_events_before_incident": [], "diagnostics": []}
            )
        }
    )
    if _fits(candidate, budget.max_bytes):
        return candidate

    for summary_limit, notes_limit in zip(_SUMMARY_LIMITS, _NOTES_LIMITS):
        candidate = candidate.model_copy(
            update={
                "summary": _truncate(report.summary, summary_limit) or "",
                "notes": _truncate(report.notes, notes_limit),
            }
        )
        if _fits(candidate, budget.max_bytes):
            logger.warning("report_compaction_truncated report_id=%s summary_limit=%s", report.id, summary_limit)
            return candidate

    raise ReportTooLargeError(f"report {report.id} does not fit in {budget.max_bytes} bytes")
