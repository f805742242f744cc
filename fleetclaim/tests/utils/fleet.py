from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fleetclaim.domain.models import GpsPoint, IncidentEvent
from fleetclaim.providers.credentials.static import StaticCredentialStore
from fleetclaim.providers.telematics.base import DeviceInfo, DriverInfo, TenantCredentials
from fleetclaim.providers.telematics.memory import InMemoryConnector, InMemoryDatabase


T0 = datetime(2024, 3, 5, 14, 30, tzinfo=timezone.utc)
PASSWORD = "s3cret"


def gps_trail(
    start: datetime,
    count: int,
    *,
    step_s: int = 1,
    speeds: list[float] | None = None,
    lat: float = 43.65,
    lon: float = -79.38,
) -> list[GpsPoint]:
    # Straight-line trail with optional per-point speeds (km/h).
    return [
        GpsPoint(
            timestamp=start + timedelta(seconds=idx * step_s),
            latitude=lat + idx * 0.0001,
            longitude=lon + idx * 0.0001,
            speed_kmh=speeds[idx] if speeds is not None else 50.0,
        )
        for idx in range(count)
    ]


def incident(
    incident_id: str = "ev-1",
    *,
    device_id: str | None = "dev-1",
    driver_id: str | None = "drv-1",
    rule_name: str = "Harsh Braking",
    at: datetime = T0,
    duration_s: int = 10,
) -> IncidentEvent:
    return IncidentEvent(
        id=incident_id,
        device_id=device_id,
        driver_id=driver_id,
        rule_name=rule_name,
        active_from=at,
        active_to=at + timedelta(seconds=duration_s),
    )


def seed_fleet(database: InMemoryDatabase, *, device_id: str = "dev-1", driver_id: str = "drv-1") -> InMemoryDatabase:
    database.devices[device_id] = DeviceInfo(id=device_id, name="Truck 12", vin="1FTFW1ET5DFC10312", plate="ABC-123")
    database.drivers[driver_id] = DriverInfo(id=driver_id, name="Sam Driver", license_number="D1234", license_state="ON")
    database.log_records[device_id] = gps_trail(T0 - timedelta(seconds=60), 121, step_s=1)
    return database


def build_tenants(*tenant_ids: str) -> tuple[InMemoryConnector, StaticCredentialStore]:
    connector = InMemoryConnector({tenant_id: InMemoryDatabase(password=PASSWORD) for tenant_id in tenant_ids})
    credentials = StaticCredentialStore(
        {
            tenant_id: TenantCredentials(database=tenant_id, user_name="svc@example.com", password=PASSWORD)
            for tenant_id in tenant_ids
        }
    )
    return connector, credentials
