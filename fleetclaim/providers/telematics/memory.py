from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fleetclaim.core.errors import AuthenticationError
from fleetclaim.domain.models import GpsPoint, IncidentEvent
from fleetclaim.providers.telematics.base import (
    DeviceInfo,
    DriverInfo,
    FeedPage,
    StatusReading,
    StoredRecord,
    TenantCredentials,
)


@dataclass
class InMemoryDatabase:
    # Mutable state of one tenant database; tests seed it directly.
    password: str | None = None
    records: dict[str, tuple[str, Any]] = field(default_factory=dict)
    events: list[IncidentEvent] = field(default_factory=list)
    log_records: dict[str, list[GpsPoint]] = field(default_factory=dict)
    status_data: dict[str, list[StatusReading]] = field(default_factory=dict)
    devices: dict[str, DeviceInfo] = field(default_factory=dict)
    drivers: dict[str, DriverInfo] = field(default_factory=dict)
    # Ordered log of record mutations, e.g. ("remove", id) / ("add", id).
    operations: list[tuple[str, str]] = field(default_factory=list)
    next_record_id: int = 1

    def put_raw_record(self, tag: str, details: Any) -> str:
        record_id = f"b{self.next_record_id}"
        self.next_record_id += 1
        self.records[record_id] = (tag, copy.deepcopy(details))
        return record_id


class InMemoryTelematicsApi:
    def __init__(self, tenant_id: str, database: InMemoryDatabase) -> None:
        self.tenant_id = tenant_id
        self._db = database

    async def search_records(self, tag: str) -> list[StoredRecord]:
        return [
            StoredRecord(id=record_id, details=copy.deepcopy(details))
            for record_id, (record_tag, details) in self._db.records.items()
            if record_tag == tag
        ]

    async def add_record(self, tag: str, details: dict[str, Any]) -> str:
        record_id = self._db.put_raw_record(tag, details)
        self._db.operations.append(("add", record_id))
        return record_id

    async def remove_record(self, record_id: str) -> None:
        self._db.records.pop(record_id, None)
        self._db.operations.append(("remove", record_id))

    async def get_exception_feed(
        self,
        from_version: str | None,
        *,
        results_limit: int,
        from_date: datetime | None = None,
    ) -> FeedPage:
        # Versions are positions in the append-only event list.
        if from_version is not None:
            start = int(from_version)
        elif from_date is not None:
            start = next(
                (idx for idx, event in enumerate(self._db.events) if event.active_from >= from_date),
                len(self._db.events),
            )
        else:
            start = 0
        end = min(start + results_limit, len(self._db.events))
        return FeedPage(events=list(self._db.events[start:end]), to_version=str(end))

    async def get_exception_events(
        self,
        *,
        from_date: datetime,
        to_date: datetime,
        device_id: str | None = None,
        driver_id: str | None = None,
    ) -> list[IncidentEvent]:
        return [
            event
            for event in self._db.events
            if from_date <= event.active_from <= to_date
            and (device_id is None or event.device_id == device_id)
            and (driver_id is None or event.driver_id == driver_id)
        ]

    async def get_log_records(self, device_id: str, from_date: datetime, to_date: datetime) -> list[GpsPoint]:
        points = self._db.log_records.get(device_id, [])
        return sorted(
            (point for point in points if from_date <= point.timestamp <= to_date),
            key=lambda point: point.timestamp,
        )

    async def get_status_data(self, device_id: str, from_date: datetime, to_date: datetime) -> list[StatusReading]:
        readings = self._db.status_data.get(device_id, [])
        return sorted(
            (reading for reading in readings if from_date <= reading.timestamp <= to_date),
            key=lambda reading: reading.timestamp,
        )

    async def get_device(self, device_id: str) -> DeviceInfo | None:
        return self._db.devices.get(device_id)

    async def get_driver(self, driver_id: str) -> DriverInfo | None:
        return self._db.drivers.get(driver_id)


class InMemoryConnector:
    def __init__(self, databases: dict[str, InMemoryDatabase] | None = None) -> None:
        self.databases = databases if databases is not None else {}
        self.auth_calls: list[str] = []

    def database(self, tenant_id: str) -> InMemoryDatabase:
        return self.databases.setdefault(tenant_id, InMemoryDatabase())

    async def authenticate(self, tenant_id: str, credentials: TenantCredentials) -> InMemoryTelematicsApi:
        self.auth_calls.append(tenant_id)
        database = self.databases.get(credentials.database)
        if database is None:
            raise AuthenticationError(f"Unknown database {credentials.database}")
        if database.password is not None and database.password != credentials.password:
            raise AuthenticationError(f"Invalid credentials for {credentials.database}")
        return InMemoryTelematicsApi(tenant_id, database)
