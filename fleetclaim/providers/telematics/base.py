from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from fleetclaim.domain.models import GpsPoint, IncidentEvent


@dataclass(frozen=True)
class TenantCredentials:
    database: str
    user_name: str
    password: str
    server: str | None = None


@dataclass(frozen=True)
class StoredRecord:
    # Raw flat record as returned by the vendor; details may be anything.
    id: str
    details: Any


@dataclass(frozen=True)
class FeedPage:
    events: list[IncidentEvent]
    to_version: str | None


@dataclass(frozen=True)
class StatusReading:
    timestamp: datetime
    diagnostic_id: str
    diagnostic_name: str
    value: float | None
    code: str | None = None
    unit: str | None = None


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    name: str | None = None
    vin: str | None = None
    plate: str | None = None


@dataclass(frozen=True)
class DriverInfo:
    id: str
    name: str | None = None
    license_number: str | None = None
    license_state: str | None = None
    phone: str | None = None
    email: str | None = None


class TelematicsApi(Protocol):
    # Typed surface of the vendor API for one authenticated tenant session.
    tenant_id: str

    async def search_records(self, tag: str) -> list[StoredRecord]:
        ...

    async def add_record(self, tag: str, details: dict[str, Any]) -> str:
        ...

    async def remove_record(self, record_id: str) -> None:
        ...

    async def get_exception_feed(
        self,
        from_version: str | None,
        *,
        results_limit: int,
        from_date: datetime | None = None,
    ) -> FeedPage:
        ...

    async def get_exception_events(
        self,
        *,
        from_date: datetime,
        to_date: datetime,
        device_id: str | None = None,
        driver_id: str | None = None,
    ) -> list[IncidentEvent]:
        ...

    async def get_log_records(
        self, device_id: str, from_date: datetime, to_date: datetime
    ) -> list[GpsPoint]:
        ...

    async def get_status_data(
        self, device_id: str, from_date: datetime, to_date: datetime
    ) -> list[StatusReading]:
        ...

    async def get_device(self, device_id: str) -> DeviceInfo | None:
        ...

    async def get_driver(self, driver_id: str) -> DriverInfo | None:
        ...


class TelematicsConnector(Protocol):
    async def authenticate(self, tenant_id: str, credentials: TenantCredentials) -> TelematicsApi:
        ...
