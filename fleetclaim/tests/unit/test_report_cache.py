from __future__ import annotations

import pytest

from fleetclaim.domain.models import IncidentReport
from fleetclaim.services.report_cache import ReportCache
from fleetclaim.tests.utils.fleet import T0


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_entries_expire_after_ttl() -> None:
    clock = _Clock()
    cache = ReportCache(60, time_source=clock)
    report = IncidentReport(vehicle_id="dev-1", occurred_at=T0)

    await cache.set("fleet_a", report.id, report)
    clock.now += 59

    assert await cache.get("fleet_a", report.id) is report
    assert await cache.get("fleet_b", report.id) is None

    clock.now += 1
    assert await cache.get("fleet_a", report.id) is None


@pytest.mark.asyncio
async def test_zero_ttl_disables_cache() -> None:
    cache = ReportCache(0)
    report = IncidentReport(vehicle_id="dev-1", occurred_at=T0)

    await cache.set("fleet_a", report.id, report)

    assert await cache.get("fleet_a", report.id) is None


@pytest.mark.asyncio
async def test_clear_drops_everything() -> None:
    cache = ReportCache(60)
    report = IncidentReport(vehicle_id="dev-1", occurred_at=T0)
    await cache.set("fleet_a", report.id, report)

    await cache.clear()

    assert await cache.get("fleet_a", report.id) is None


@pytest.mark.asyncio
async def test_expired_entries_are_swept_on_write() -> None:
    clock = _Clock()
    cache = ReportCache(1, time_source=clock)

    for n in range(500):
        report = IncidentReport(id=f"rpt_{n:012d}", vehicle_id="dev-1", occurred_at=T0)
        await cache.set("fleet_a", report.id, report)
        clock.now += 10

    assert len(cache) == 1


@pytest.mark.asyncio
async def test_least_recently_read_entry_is_evicted_at_capacity() -> None:
    cache = ReportCache(60, max_entries=2, time_source=_Clock())
    first, second, third = (
        IncidentReport(id=f"rpt_00000000000{n}", vehicle_id="dev-1", occurred_at=T0) for n in range(3)
    )
    await cache.set("fleet_a", first.id, first)
    await cache.set("fleet_a", second.id, second)
    assert await cache.get("fleet_a", first.id) is first

    await cache.set("fleet_a", third.id, third)

    assert len(cache) == 2
    assert await cache.get("fleet_a", second.id) is None
    assert await cache.get("fleet_a", first.id) is first
    assert await cache.get("fleet_a", third.id) is third
