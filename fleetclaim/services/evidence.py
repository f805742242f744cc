from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import FleetClaimError
from fleetclaim.domain.models import (
    AccelerometerEvent,
    DiagnosticSnapshot,
    EvidencePackage,
    GpsPoint,
    HardEvent,
    IncidentEvent,
)
from fleetclaim.providers.telematics.base import StatusReading, TelematicsApi
from fleetclaim.providers.weather.base import WeatherInfo, WeatherProvider


logger = logging.getLogger(__name__)

_KMH_TO_MPS = 1 / 3.6
_MIN_DELTA_S = 0.001
# Readings below this total are sensor noise.
_ACCEL_NOISE_G = 0.3
_HIGH_G = 0.5
_ROLLOVER_Z_G = -1.5
_STATUS_WINDOW = timedelta(minutes=1)
_DRIVER_HISTORY = timedelta(days=30)
_HARD_EVENT_MARKERS = ("hardbrak", "hardaccel", "hardcornering", "harsh")


def nearest_point_index(trail: list[GpsPoint], at: datetime) -> int | None:
    # Earliest index wins ties so the choice is stable for a given trail.
    if not trail:
        return None
    return min(range(len(trail)), key=lambda idx: (abs((trail[idx].timestamp - at).total_seconds()), idx))


def deceleration_before(trail: list[GpsPoint], start: datetime) -> float | None:
    # Speed change (m/s^2) across the two trail points at or before the incident start.
    preceding = sorted((point for point in trail if point.timestamp <= start), key=lambda point: point.timestamp)
    if len(preceding) < 2:
        return None
    earlier, latest = preceding[-2], preceding[-1]
    if earlier.speed_kmh is None or latest.speed_kmh is None:
        return None
    delta_t = (latest.timestamp - earlier.timestamp).total_seconds()
    if abs(delta_t) < _MIN_DELTA_S:
        return None
    return (latest.speed_kmh - earlier.speed_kmh) * _KMH_TO_MPS / delta_t


def light_condition(at: datetime) -> str:
    # Hour-of-day approximation in UTC; no sunrise/sunset model.
    hour = at.astimezone(timezone.utc).hour
    if 6 <= hour < 8:
        return "Dawn"
    if 8 <= hour < 17:
        return "Daylight"
    if 17 <= hour < 19:
        return "Dusk"
    return "Night"


def impact_direction(event: AccelerometerEvent | None) -> str | None:
    if event is None:
        return None
    abs_x, abs_y, abs_z = abs(event.g_force_x), abs(event.g_force_y), abs(event.g_force_z)
    if abs_z > abs_x and abs_z > abs_y and event.g_force_z < _ROLLOVER_Z_G:
        return "Rollover"
    if abs_y > abs_x and abs_y > abs_z:
        return "Front" if event.g_force_y > 0 else "Rear"
    if abs_x > abs_y and abs_x > abs_z:
        return "Right" if event.g_force_x > 0 else "Left"
    return "Unknown"


def _is_accelerometer(reading: StatusReading) -> bool:
    name = reading.diagnostic_name.lower()
    return "accelerometer" in name or "acceleration" in name


def _axis_value(readings: list[StatusReading], markers: tuple[str, ...]) -> float:
    for reading in readings:
        name = reading.diagnostic_name.lower()
        if any(marker in name for marker in markers) and reading.value is not None:
            return reading.value
    return 0.0


def accelerometer_events(readings: list[StatusReading]) -> list[AccelerometerEvent]:
    # Combine per-axis readings sharing a timestamp into one g-force sample.
    grouped: dict[datetime, list[StatusReading]] = {}
    for reading in readings:
        if _is_accelerometer(reading):
            grouped.setdefault(reading.timestamp, []).append(reading)
    events: list[AccelerometerEvent] = []
    for timestamp in sorted(grouped):
        group = grouped[timestamp]
        x = _axis_value(group, ("lateral", "side"))
        y = _axis_value(group, ("forward", "braking"))
        z = _axis_value(group, ("vertical", "up down", "updown"))
        total = math.sqrt(x * x + y * y + z * z)
        if total <= _ACCEL_NOISE_G:
            continue
        events.append(
            AccelerometerEvent(
                timestamp=timestamp,
                g_force_x=x,
                g_force_y=y,
                g_force_z=z,
                total_g_force=total,
                event_type="HighG" if total > _HIGH_G else "Normal",
            )
        )
    return events


def latest_diagnostics(readings: list[StatusReading]) -> list[DiagnosticSnapshot]:
    # Keep the last reading per diagnostic in the window.
    latest: dict[str, StatusReading] = {}
    for reading in sorted(readings, key=lambda item: item.timestamp):
        latest[reading.diagnostic_id] = reading
    return [
        DiagnosticSnapshot(
            code=reading.code or reading.diagnostic_id,
            description=reading.diagnostic_name,
            value=reading.value,
            unit=reading.unit,
            recorded_at=reading.timestamp,
        )
        for reading in latest.values()
    ]


def apply_vehicle_status(package: EvidencePackage, readings: list[StatusReading], at: datetime) -> None:
    for reading in sorted(readings, key=lambda item: item.timestamp):
        if abs(reading.timestamp - at) > _STATUS_WINDOW or reading.value is None:
            continue
        name = reading.diagnostic_name.lower()
        value = reading.value
        if "seatbelt" in name:
            package.seatbelt_fastened = value > 0
        elif "headlight" in name or "headlamp" in name:
            package.headlights_on = value > 0
        elif "fuel level" in name:
            package.fuel_level_percent = value
        elif "engine rpm" in name or "engine speed" in name:
            package.engine_rpm = int(value)
        elif "abs" in name and "active" in name:
            package.abs_activated = value > 0
        elif "traction control" in name:
            package.traction_control_activated = value > 0
        elif "stability control" in name:
            package.stability_control_activated = value > 0


def is_hard_event(rule_name: str) -> bool:
    compact = rule_name.lower().replace(" ", "")
    return any(marker in compact for marker in _HARD_EVENT_MARKERS)


class EvidenceCollector:
    def __init__(
        self,
        weather: WeatherProvider | None = None,
        *,
        hard_event_lookback_s: int | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._weather = weather
        self._hard_event_lookback = timedelta(
            seconds=hard_event_lookback_s if hard_event_lookback_s is not None else settings.hard_event_lookback_s
        )
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def collect(
        self,
        api: TelematicsApi,
        incident: IncidentEvent,
        window_before: timedelta | None = None,
        window_after: timedelta | None = None,
    ) -> EvidencePackage:
        if not incident.device_id:
            return EvidencePackage()
        settings = get_settings()
        window_before = window_before if window_before is not None else timedelta(seconds=settings.evidence_window_before_s)
        window_after = window_after if window_after is not None else timedelta(seconds=settings.evidence_window_after_s)
        start = incident.active_from
        from_date = start - window_before
        to_date = (incident.active_to or start) + window_after

        trail, readings, recent_incidents, hard_events = await asyncio.gather(
            api.get_log_records(incident.device_id, from_date, to_date),
            api.get_status_data(incident.device_id, from_date, to_date),
            self._driver_incident_count(api, incident),
            self._hard_events(api, incident),
        )
        trail = sorted(trail, key=lambda point: point.timestamp)

        package = EvidencePackage(gps_trail=trail)
        incident_idx = nearest_point_index(trail, start)
        incident_point = trail[incident_idx] if incident_idx is not None else None
        if trail:
            package.speed_at_event_kmh = incident_point.speed_kmh if incident_point else None
            package.max_speed_kmh = max(point.speed_kmh or 0.0 for point in trail)
            known = [point.speed_kmh for point in trail if point.speed_kmh is not None]
            package.avg_speed_kmh = sum(known) / len(known) if known else None
            package.time_driving_before_incident_s = (start - trail[0].timestamp).total_seconds()
        package.deceleration_mps2 = deceleration_before(trail, start)

        events = accelerometer_events(readings)
        if events:
            impact = max(events, key=lambda event: event.total_g_force)
            package.accelerometer_events = events
            package.max_g_force = impact.total_g_force
            package.impact_g_force = impact.total_g_force
            package.impact_direction = impact_direction(impact)

        package.diagnostics = latest_diagnostics(readings)
        apply_vehicle_status(package, readings, start)
        package.hard_events_before_incident = hard_events
        package.driver_incident_count_last_30_days = recent_incidents
        package.light_condition = light_condition(start)

        if incident_point is not None:
            weather = await self._lookup_weather(incident_point, start)
            if weather is not None:
                package.weather_condition = weather.condition
                package.temperature_celsius = weather.temperature_celsius
        return package

    async def _lookup_weather(self, point: GpsPoint, at: datetime) -> WeatherInfo | None:
        if self._weather is None:
            return None
        try:
            return await self._weather.get_weather(point.latitude, point.longitude, at)
        except Exception as exc:  # noqa: BLE001 - weather never fails evidence collection
            logger.warning("weather_lookup_failed lat=%.4f lon=%.4f error=%s", point.latitude, point.longitude, exc)
            return None

    async def _driver_incident_count(self, api: TelematicsApi, incident: IncidentEvent) -> int | None:
        if not incident.driver_id:
            return None
        now = self._now()
        try:
            events = await api.get_exception_events(
                from_date=now - _DRIVER_HISTORY,
                to_date=now,
                driver_id=incident.driver_id,
            )
        except FleetClaimError as exc:
            logger.warning(
                "driver_history_unavailable tenant_id=%s driver_id=%s error=%s",
                api.tenant_id,
                incident.driver_id,
                exc,
            )
            return None
        return len(events)

    async def _hard_events(self, api: TelematicsApi, incident: IncidentEvent) -> list[HardEvent]:
        start = incident.active_from
        try:
            events = await api.get_exception_events(
                from_date=start - self._hard_event_lookback,
                to_date=start,
                device_id=incident.device_id,
            )
        except FleetClaimError as exc:
            logger.warning(
                "hard_events_unavailable tenant_id=%s device_id=%s error=%s",
                api.tenant_id,
                incident.device_id,
                exc,
            )
            return []
        hard_events = [
            HardEvent(
                timestamp=event.active_from,
                event_type=event.rule_name,
                duration_seconds=(event.active_to - event.active_from).total_seconds() if event.active_to else None,
            )
            for event in events
            if event.id != incident.id and is_hard_event(event.rule_name)
        ]
        return sorted(hard_events, key=lambda event: event.timestamp)
