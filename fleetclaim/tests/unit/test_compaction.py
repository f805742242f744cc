from __future__ import annotations

from datetime import timedelta

import pytest

from fleetclaim.core.errors import ReportTooLargeError
from fleetclaim.domain.models import (
    AccelerometerEvent,
    DiagnosticSnapshot,
    EvidencePackage,
    HardEvent,
    HosStatus,
    IncidentReport,
)
from fleetclaim.persistence.envelope import Envelope, envelope_size
from fleetclaim.services.compaction import (
    CompactionBudget,
    compact_report,
    rank_diagnostics,
    rank_hard_events,
    sample_gps_trail,
)
from fleetclaim.tests.utils.fleet import T0, gps_trail


def _budget(**overrides) -> CompactionBudget:
    values = {"max_bytes": 10_000, "max_gps_points": 60, "max_hard_events": 5, "max_diagnostics": 10}
    values.update(overrides)
    return CompactionBudget(**values)


def _report(trail_points: int = 10, **overrides) -> IncidentReport:
    start = T0 - timedelta(seconds=trail_points // 2)
    values = {
        "incident_id": "ev-1",
        "vehicle_id": "dev-1",
        "occurred_at": T0,
        "summary": "Harsh Braking involving Truck 12",
        "evidence": EvidencePackage(gps_trail=gps_trail(start, trail_points)),
    }
    values.update(overrides)
    return IncidentReport(**values)


def test_sample_keeps_exact_budget_and_anchor_points() -> None:
    trail = gps_trail(T0 - timedelta(seconds=500), 1000)
    occurred_at = T0 + timedelta(milliseconds=300)

    sampled = sample_gps_trail(trail, occurred_at, 20)

    assert len(sampled) == 20
    assert [point.timestamp for point in sampled] == sorted(point.timestamp for point in sampled)
    assert sampled[0] == trail[0]
    assert sampled[-1] == trail[999]
    nearest = min(trail, key=lambda point: abs((point.timestamp - occurred_at).total_seconds()))
    assert nearest in sampled


def test_sample_is_deterministic_and_order_independent() -> None:
    trail = gps_trail(T0, 250)
    shuffled = trail[::2] + trail[1::2]

    first = sample_gps_trail(trail, T0 + timedelta(seconds=100), 17)
    second = sample_gps_trail(shuffled, T0 + timedelta(seconds=100), 17)

    assert first == second


def test_sample_returns_short_trails_unchanged() -> None:
    trail = gps_trail(T0, 5)

    assert sample_gps_trail(trail, T0, 20) == trail


@pytest.mark.parametrize("max_points", [0, 1, 2])
def test_sample_rejects_budgets_below_three(max_points: int) -> None:
    with pytest.raises(ValueError):
        sample_gps_trail(gps_trail(T0, 10), T0, max_points)


def test_sample_handles_incident_at_trail_edge() -> None:
    trail = gps_trail(T0, 100)

    sampled = sample_gps_trail(trail, T0 - timedelta(hours=1), 10)

    assert len(sampled) == 10
    assert sampled[0] == trail[0]
    assert sampled[-1] == trail[-1]


def test_rank_hard_events_prefers_nearest_to_incident() -> None:
    events = [
        HardEvent(timestamp=T0 - timedelta(minutes=minutes), event_type="Hard Braking")
        for minutes in (25, 1, 10, 3)
    ]

    ranked = rank_hard_events(events, T0, 2)

    assert [event.timestamp for event in ranked] == [T0 - timedelta(minutes=1), T0 - timedelta(minutes=3)]


def test_rank_diagnostics_prefers_most_recent() -> None:
    diagnostics = [
        DiagnosticSnapshot(code="B", recorded_at=T0 - timedelta(minutes=5)),
        DiagnosticSnapshot(code="A"),
        DiagnosticSnapshot(code="C", recorded_at=T0),
    ]

    assert [item.code for item in rank_diagnostics(diagnostics, 3)] == ["C", "B", "A"]
    assert [item.code for item in rank_diagnostics(diagnostics, 1)] == ["C"]


def test_compact_is_noop_for_small_reports_except_pdf() -> None:
    report = _report(10, pdf_base64="JVBERi0xLjQ=")

    compacted = compact_report(report, _budget())

    assert compacted.pdf_base64 is None
    assert compacted.evidence.gps_trail == report.evidence.gps_trail
    assert compacted.summary == report.summary
    assert compacted.id == report.id
    # The input is never mutated.
    assert report.pdf_base64 == "JVBERi0xLjQ="


def test_compact_drops_full_only_evidence() -> None:
    evidence = EvidencePackage(
        gps_trail=gps_trail(T0, 5),
        accelerometer_events=[
            AccelerometerEvent(timestamp=T0, g_force_x=0.1, g_force_y=1.2, g_force_z=0.0, total_g_force=1.2)
        ],
        driver_hos_status=HosStatus(status="Driving"),
        photo_urls=["https://example.com/1.jpg"],
        max_g_force=1.2,
    )

    compacted = compact_report(_report(evidence=evidence), _budget())

    assert compacted.evidence.accelerometer_events == []
    assert compacted.evidence.driver_hos_status is None
    assert compacted.evidence.photo_urls == []
    assert compacted.evidence.max_g_force == 1.2


def test_compact_samples_and_caps_lists() -> None:
    evidence = EvidencePackage(
        gps_trail=gps_trail(T0 - timedelta(seconds=500), 1000),
        hard_events_before_incident=[
            HardEvent(timestamp=T0 - timedelta(seconds=idx * 30), event_type="Hard Braking") for idx in range(1, 12)
        ],
        diagnostics=[DiagnosticSnapshot(code=f"D{idx}", recorded_at=T0 - timedelta(seconds=idx)) for idx in range(30)],
    )
    budget = _budget(max_bytes=1_000_000, max_gps_points=20, max_hard_events=5, max_diagnostics=10)

    compacted = compact_report(_report(evidence=evidence), budget)

    assert len(compacted.evidence.gps_trail) == 20
    assert len(compacted.evidence.hard_events_before_incident) == 5
    assert len(compacted.evidence.diagnostics) == 10


def test_compact_fits_record_ceiling_by_reducing_gps() -> None:
    report = _report(1000)
    budget = _budget(max_bytes=3000, max_gps_points=60)

    compacted = compact_report(report, budget)

    assert envelope_size(Envelope.for_report(compacted)) <= 3000
    trail = compacted.evidence.gps_trail
    assert 3 <= len(trail) < 60
    assert trail[0] == report.evidence.gps_trail[0]
    assert trail[-1] == report.evidence.gps_trail[-1]


def test_compact_truncates_text_as_last_resort() -> None:
    report = _report(5, summary="x" * 5000, notes="n" * 5000)
    budget = _budget(max_bytes=2600)

    compacted = compact_report(report, budget)

    assert envelope_size(Envelope.for_report(compacted)) <= 2600
    assert compacted.summary.endswith("...")
    assert len(compacted.summary) <= 500
    assert compacted.notes is None or len(compacted.notes) <= 1000


def test_compact_raises_when_minimal_report_cannot_fit() -> None:
    with pytest.raises(ReportTooLargeError):
        compact_report(_report(10), _budget(max_bytes=100))


def test_compact_is_deterministic() -> None:
    report = _report(500)
    budget = _budget(max_bytes=4000, max_gps_points=40)

    assert compact_report(report, budget) == compact_report(report, budget)


def _anchors_kept(original: list, sampled: list, occurred_at) -> bool:
    ordered = sorted(original, key=lambda point: point.timestamp)
    nearest = min(abs((point.timestamp - occurred_at).total_seconds()) for point in ordered)
    return (
        ordered[0] in sampled
        and ordered[-1] in sampled
        and any(abs((point.timestamp - occurred_at).total_seconds()) == nearest for point in sampled)
    )


@pytest.mark.parametrize("count", [1, 2, 3, 4, 5, 19, 20, 21, 59, 60, 61, 250, 1000])
@pytest.mark.parametrize("max_points", [3, 4, 5, 20, 60])
@pytest.mark.parametrize("position", [-1.0, 0.0, 0.37, 0.5, 0.999, 1.0, 2.0])
def test_sampling_properties_hold_across_trails(count: int, max_points: int, position: float) -> None:
    trail = gps_trail(T0, count, step_s=2)
    occurred_at = T0 + timedelta(seconds=position * 2 * max(count - 1, 1))
    # Feed the sampler an unsorted copy; output must not depend on input order.
    scrambled = trail[1::2] + trail[::2]

    sampled = sample_gps_trail(scrambled, occurred_at, max_points)

    if count <= max_points:
        assert sampled == scrambled
        return
    assert len(sampled) == max_points
    assert [point.timestamp for point in sampled] == sorted({point.timestamp for point in sampled})
    assert all(point in trail for point in sampled)
    assert _anchors_kept(trail, sampled, occurred_at)
    assert sample_gps_trail(trail, occurred_at, max_points) == sampled


@pytest.mark.parametrize("count", [10, 200, 1000])
@pytest.mark.parametrize("max_bytes", [2600, 4000, 10_000])
@pytest.mark.parametrize("offset_s", [-30, 0, 7, 5000])
def test_compacted_reports_fit_and_keep_anchor_points(count: int, max_bytes: int, offset_s: int) -> None:
    report = _report(count, occurred_at=T0 + timedelta(seconds=offset_s))

    compacted = compact_report(report, _budget(max_bytes=max_bytes))

    assert envelope_size(Envelope.for_report(compacted)) <= max_bytes
    trail = compacted.evidence.gps_trail
    assert len(trail) <= 60
    assert _anchors_kept(report.evidence.gps_trail, trail, report.occurred_at)
