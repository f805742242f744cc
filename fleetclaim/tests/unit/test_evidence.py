from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from fleetclaim.core.errors import VendorApiError
from fleetclaim.domain.models import AccelerometerEvent, GpsPoint
from fleetclaim.providers.telematics.base import StatusReading
from fleetclaim.providers.telematics.memory import InMemoryDatabase, InMemoryTelematicsApi
from fleetclaim.providers.weather.base import WeatherInfo
from fleetclaim.providers.weather.fake import FakeWeatherProvider
from fleetclaim.services.evidence import (
    EvidenceCollector,
    accelerometer_events,
    deceleration_before,
    impact_direction,
    is_hard_event,
    latest_diagnostics,
    light_condition,
    nearest_point_index,
)
from fleetclaim.tests.utils.fleet import T0, gps_trail, incident, seed_fleet


def _reading(offset_s: int, name: str, value: float | None, diagnostic_id: str | None = None) -> StatusReading:
    return StatusReading(
        timestamp=T0 + timedelta(seconds=offset_s),
        diagnostic_id=diagnostic_id or name.lower().replace(" ", "_"),
        diagnostic_name=name,
        value=value,
    )


def test_nearest_point_prefers_earliest_on_ties() -> None:
    trail = gps_trail(T0 - timedelta(seconds=2), 5, step_s=2)

    assert nearest_point_index(trail, T0) == 1
    assert nearest_point_index(trail, T0 - timedelta(seconds=1)) == 0
    assert nearest_point_index([], T0) is None


def test_deceleration_uses_last_two_points_before_start() -> None:
    trail = gps_trail(T0 - timedelta(seconds=2), 4, step_s=1, speeds=[90.0, 72.0, 36.0, 0.0])

    # 72 -> 36 km/h over one second before T0.
    assert deceleration_before(trail, T0) == pytest.approx(-10.0)


def test_deceleration_needs_two_points_with_speed() -> None:
    assert deceleration_before(gps_trail(T0, 1), T0) is None
    trail = [
        GpsPoint(timestamp=T0 - timedelta(seconds=1), latitude=0, longitude=0, speed_kmh=None),
        GpsPoint(timestamp=T0, latitude=0, longitude=0, speed_kmh=10.0),
    ]
    assert deceleration_before(trail, T0) is None


@pytest.mark.parametrize(
    ("hour", "expected"),
    [(3, "Night"), (6, "Dawn"), (12, "Daylight"), (17, "Dusk"), (19, "Night")],
)
def test_light_condition_by_utc_hour(hour: int, expected: str) -> None:
    assert light_condition(datetime(2024, 3, 5, hour, 0, tzinfo=timezone.utc)) == expected


@pytest.mark.parametrize(
    ("x", "y", "z", "expected"),
    [
        (0.1, 1.5, 0.0, "Front"),
        (0.1, -1.5, 0.0, "Rear"),
        (1.2, 0.1, 0.0, "Right"),
        (-1.2, 0.1, 0.0, "Left"),
        (0.1, 0.2, -2.0, "Rollover"),
        (0.5, 0.5, 0.5, "Unknown"),
    ],
)
def test_impact_direction(x: float, y: float, z: float, expected: str) -> None:
    event = AccelerometerEvent(timestamp=T0, g_force_x=x, g_force_y=y, g_force_z=z, total_g_force=1.0)

    assert impact_direction(event) == expected


def test_accelerometer_readings_are_grouped_and_denoised() -> None:
    readings = [
        _reading(0, "Accelerometer forward braking", 1.2),
        _reading(0, "Accelerometer side to side lateral", 0.3),
        _reading(0, "Accelerometer up down vertical", 0.1),
        _reading(5, "Accelerometer forward braking", 0.1),
        _reading(5, "Engine speed", 2200),
    ]

    events = accelerometer_events(readings)

    assert len(events) == 1
    assert events[0].g_force_y == 1.2
    assert events[0].event_type == "HighG"


def test_latest_diagnostics_keeps_last_reading_per_diagnostic() -> None:
    readings = [_reading(0, "Fuel level", 40.0, "fuel"), _reading(10, "Fuel level", 38.0, "fuel")]

    diagnostics = latest_diagnostics(readings)

    assert len(diagnostics) == 1
    assert diagnostics[0].value == 38.0


def test_hard_event_rule_names() -> None:
    assert is_hard_event("Hard Braking")
    assert is_hard_event("Harsh Cornering")
    assert not is_hard_event("Speeding")


@pytest.mark.asyncio
async def test_collect_builds_metrics_and_vehicle_status() -> None:
    database = seed_fleet(InMemoryDatabase())
    database.status_data["dev-1"] = [
        _reading(-5, "Seatbelt buckled", 1.0),
        _reading(-5, "Headlights", 0.0),
        _reading(0, "Accelerometer forward braking", -1.4),
        _reading(0, "Accelerometer side to side lateral", 0.2),
    ]
    earlier = incident("ev-0", rule_name="Hard Braking", at=T0 - timedelta(minutes=10))
    older = incident("ev-old", rule_name="Speeding", at=T0 - timedelta(days=3))
    target = incident("ev-1")
    database.events.extend([older, earlier, target])
    weather = FakeWeatherProvider(WeatherInfo(condition="Rain", temperature_celsius=4.5))
    collector = EvidenceCollector(weather, now=lambda: T0 + timedelta(hours=1))

    evidence = await collector.collect(InMemoryTelematicsApi("fleet_a", database), target)

    # Default window is 300 s either side; seeded trail covers T0-60s..T0+60s.
    assert len(evidence.gps_trail) == 121
    assert evidence.speed_at_event_kmh == 50.0
    assert evidence.max_speed_kmh == 50.0
    assert evidence.avg_speed_kmh == pytest.approx(50.0)
    assert evidence.time_driving_before_incident_s == 60.0
    assert evidence.seatbelt_fastened is True
    assert evidence.headlights_on is False
    assert evidence.impact_direction == "Rear"
    assert evidence.weather_condition == "Rain"
    assert evidence.temperature_celsius == 4.5
    assert evidence.light_condition == "Daylight"
    assert [event.event_type for event in evidence.hard_events_before_incident] == ["Hard Braking"]
    assert evidence.driver_incident_count_last_30_days == 3
    assert weather.calls and weather.calls[0][2] == T0


@pytest.mark.asyncio
async def test_weather_failure_degrades_to_missing_weather() -> None:
    database = seed_fleet(InMemoryDatabase())
    target = incident()
    database.events.append(target)

    evidence = await EvidenceCollector(FakeWeatherProvider(fail=True)).collect(
        InMemoryTelematicsApi("fleet_a", database), target
    )

    assert evidence.weather_condition is None
    assert evidence.gps_trail


@pytest.mark.asyncio
async def test_empty_trail_leaves_metrics_unset() -> None:
    target = incident()

    evidence = await EvidenceCollector().collect(InMemoryTelematicsApi("fleet_a", InMemoryDatabase()), target)

    assert evidence.gps_trail == []
    assert evidence.speed_at_event_kmh is None
    assert evidence.deceleration_mps2 is None


@pytest.mark.asyncio
async def test_incident_without_device_yields_empty_package() -> None:
    evidence = await EvidenceCollector().collect(
        InMemoryTelematicsApi("fleet_a", InMemoryDatabase()), incident(device_id=None)
    )

    assert evidence.gps_trail == [] and evidence.light_condition is None


class _FailingTrailApi(InMemoryTelematicsApi):
    async def get_log_records(self, device_id, from_date, to_date):
        raise VendorApiError("LogRecord unavailable")


class _FailingHistoryApi(InMemoryTelematicsApi):
    async def get_exception_events(self, **kwargs):
        raise VendorApiError("ExceptionEvent unavailable")


@pytest.mark.asyncio
async def test_gps_failure_propagates() -> None:
    api = _FailingTrailApi("fleet_a", seed_fleet(InMemoryDatabase()))

    with pytest.raises(VendorApiError):
        await EvidenceCollector().collect(api, incident())


@pytest.mark.asyncio
async def test_history_failures_degrade() -> None:
    api = _FailingHistoryApi("fleet_a", seed_fleet(InMemoryDatabase()))

    evidence = await EvidenceCollector().collect(api, incident())

    assert evidence.hard_events_before_incident == []
    assert evidence.driver_incident_count_last_30_days is None
    assert evidence.gps_trail
