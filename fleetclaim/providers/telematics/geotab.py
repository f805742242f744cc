from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import AuthenticationError, FleetClaimError, VendorApiError, VendorThrottledError
from fleetclaim.domain.models import GpsPoint, IncidentEvent
from fleetclaim.providers.telematics.base import (
    DeviceInfo,
    DriverInfo,
    FeedPage,
    StatusReading,
    StoredRecord,
    TenantCredentials,
)
from fleetclaim.services.resilience import CircuitBreaker, breaker_for, retry_async
from fleetclaim.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "telematics.geotab"
_UNKNOWN_DRIVER_ID = "UnknownDriverId"
# Error types the server returns when credentials or the session are rejected.
_AUTH_ERROR_NAMES = ("InvalidUserException", "DbUnavailableException")
# Per-user API call quota exceeded; the server expects the client to slow down.
_THROTTLED_ERROR_NAME = "OverLimitException"

_datetime_adapter = TypeAdapter(datetime)


def format_geotab_datetime(value: datetime) -> str:
    # The API expects UTC ISO-8601 with a Z suffix.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_geotab_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _entity_id(value: Any) -> str | None:
    # References arrive either as {"id": ...} objects or bare id strings.
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class GeotabTransport:
    # Shared JSON-RPC transport: one pooled client, one breaker per Geotab server.
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._fixed_breaker = breaker
        self._breakers: dict[str, CircuitBreaker] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _get_breaker(self, server: str) -> CircuitBreaker:
        # Tenants are spread over federated servers; one shard outage must not block the rest.
        if self._fixed_breaker is not None:
            return self._fixed_breaker
        breaker = self._breakers.get(server)
        if breaker is None:
            breaker = await breaker_for(_INTEGRATION, server)
            self._breakers[server] = breaker
        return breaker

    async def call(self, server: str, method: str, params: dict[str, Any]) -> Any:
        url = f"https://{server}/apiv1"
        payload = {"method": method, "params": params}
        client = self._get_client()
        breaker = await self._get_breaker(server)
        await breaker.before_call()
        start = time.monotonic()

        async def _call() -> Any:
            response = await client.post(url, json=payload)
            if response.status_code >= 500 or response.status_code == 429:
                response.raise_for_status()
            if response.status_code >= 400:
                raise VendorApiError(f"Geotab {method} returned HTTP {response.status_code}")
            return _unwrap(method, response)

        try:
            result = await retry_async(_call)
        except VendorThrottledError:
            await breaker.record_failure()
            record_external_call(integration=_INTEGRATION, latency_ms=_elapsed_ms(start), success=False)
            raise
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(integration=_INTEGRATION, latency_ms=_elapsed_ms(start), success=False)
            raise VendorApiError(f"Geotab {method} request failed") from exc
        except FleetClaimError:
            # The server answered; rejected credentials or bad arguments leave the breaker alone.
            await breaker.record_success()
            record_external_call(integration=_INTEGRATION, latency_ms=_elapsed_ms(start), success=False)
            raise

        await breaker.record_success()
        record_external_call(integration=_INTEGRATION, latency_ms=_elapsed_ms(start), success=True)
        return result

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


def _unwrap(method: str, response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError as exc:
        raise VendorApiError(f"Geotab {method} returned invalid JSON") from exc
    if not isinstance(body, dict):
        raise VendorApiError(f"Geotab {method} returned an unexpected payload")
    error = body.get("error")
    if error:
        _raise_for_error(method, error)
    return body.get("result")


def _raise_for_error(method: str, error: Any) -> None:
    message = "unknown error"
    names: list[str] = []
    if isinstance(error, dict):
        message = str(error.get("message") or message)
        for item in error.get("errors") or []:
            if isinstance(item, dict) and item.get("name"):
                names.append(str(item["name"]))
        if error.get("name"):
            names.append(str(error["name"]))
    if any(name in _AUTH_ERROR_NAMES for name in names):
        raise AuthenticationError(f"Geotab {method} rejected credentials: {message}")
    if _THROTTLED_ERROR_NAME in names:
        raise VendorThrottledError(f"Geotab {method} is rate limited: {message}")
    raise VendorApiError(f"Geotab {method} failed: {message}")


class GeotabApi:
    """One authenticated Geotab session for a single tenant database."""

    def __init__(
        self,
        tenant_id: str,
        *,
        server: str,
        credentials: dict[str, Any],
        transport: GeotabTransport,
    ) -> None:
        self.tenant_id = tenant_id
        self._server = server
        self._credentials = credentials
        self._transport = transport
        self._rule_names: dict[str, str] | None = None
        self._diagnostics: dict[str, dict[str, Any]] = {}

    async def _call(self, method: str, **params: Any) -> Any:
        params["credentials"] = self._credentials
        return await self._transport.call(self._server, method, params)

    async def _get(self, type_name: str, search: dict[str, Any] | None = None, **extra: Any) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"typeName": type_name, **extra}
        if search is not None:
            params["search"] = search
        result = await self._call("Get", **params)
        if not isinstance(result, list):
            return []
        return [item for item in result if isinstance(item, dict)]

    async def search_records(self, tag: str) -> list[StoredRecord]:
        rows = await self._get("AddInData", {"addInId": tag})
        records: list[StoredRecord] = []
        for row in rows:
            record_id = row.get("id")
            if not record_id:
                continue
            details = row.get("details")
            if details is None and "data" in row:
                # Legacy entries store the payload as a JSON string under "data".
                details = row["data"]
                if isinstance(details, str):
                    try:
                        details = json.loads(details)
                    except ValueError:
                        # Left as a string; the envelope codec reports it as malformed.
                        pass
            records.append(StoredRecord(id=str(record_id), details=details))
        return records

    async def add_record(self, tag: str, details: dict[str, Any]) -> str:
        result = await self._call("Add", typeName="AddInData", entity={"addInId": tag, "details": details})
        if not isinstance(result, str) or not result:
            raise VendorApiError("Geotab Add did not return a record id")
        return result

    async def remove_record(self, record_id: str) -> None:
        await self._call("Remove", typeName="AddInData", entity={"id": record_id})

    async def _load_rule_names(self) -> dict[str, str]:
        # Exception events only carry rule ids; cache the id -> name map per session.
        if self._rule_names is None:
            rules = await self._get("Rule")
            self._rule_names = {
                str(rule["id"]): str(rule.get("name") or rule["id"]) for rule in rules if rule.get("id")
            }
        return self._rule_names

    async def _to_events(self, rows: list[dict[str, Any]]) -> list[IncidentEvent]:
        try:
            rule_names = await self._load_rule_names()
        except VendorApiError as exc:
            logger.warning("geotab_rule_lookup_failed tenant_id=%s error=%s", self.tenant_id, exc)
            rule_names = {}
        events: list[IncidentEvent] = []
        for row in rows:
            event_id = row.get("id")
            active_from = parse_geotab_datetime(row.get("activeFrom"))
            if not event_id or active_from is None:
                continue
            rule_id = _entity_id(row.get("rule")) or ""
            rule = row.get("rule")
            rule_name = rule_names.get(rule_id)
            if rule_name is None and isinstance(rule, dict) and rule.get("name"):
                rule_name = str(rule["name"])
            driver_id = _entity_id(row.get("driver"))
            if driver_id == _UNKNOWN_DRIVER_ID:
                driver_id = None
            events.append(
                IncidentEvent(
                    id=str(event_id),
                    device_id=_entity_id(row.get("device")),
                    driver_id=driver_id,
                    rule_name=rule_name or rule_id,
                    active_from=active_from,
                    active_to=parse_geotab_datetime(row.get("activeTo")),
                )
            )
        return events

    async def get_exception_feed(
        self,
        from_version: str | None,
        *,
        results_limit: int,
        from_date: datetime | None = None,
    ) -> FeedPage:
        params: dict[str, Any] = {"typeName": "ExceptionEvent", "resultsLimit": results_limit}
        if from_version:
            params["fromVersion"] = from_version
        elif from_date is not None:
            params["search"] = {"fromDate": format_geotab_datetime(from_date)}
        result = await self._call("GetFeed", **params)
        if not isinstance(result, dict):
            raise VendorApiError("Geotab GetFeed returned an unexpected payload")
        rows = [row for row in result.get("data") or [] if isinstance(row, dict)]
        to_version = result.get("toVersion")
        return FeedPage(
            events=await self._to_events(rows),
            to_version=str(to_version) if to_version is not None else None,
        )

    async def get_exception_events(
        self,
        *,
        from_date: datetime,
        to_date: datetime,
        device_id: str | None = None,
        driver_id: str | None = None,
    ) -> list[IncidentEvent]:
        search: dict[str, Any] = {
            "fromDate": format_geotab_datetime(from_date),
            "toDate": format_geotab_datetime(to_date),
        }
        if device_id:
            search["deviceSearch"] = {"id": device_id}
        if driver_id:
            search["driverSearch"] = {"id": driver_id}
        rows = await self._get("ExceptionEvent", search)
        return await self._to_events(rows)

    async def get_log_records(self, device_id: str, from_date: datetime, to_date: datetime) -> list[GpsPoint]:
        rows = await self._get(
            "LogRecord",
            {
                "deviceSearch": {"id": device_id},
                "fromDate": format_geotab_datetime(from_date),
                "toDate": format_geotab_datetime(to_date),
            },
        )
        points: list[GpsPoint] = []
        for row in rows:
            timestamp = parse_geotab_datetime(row.get("dateTime"))
            if timestamp is None:
                continue
            points.append(
                GpsPoint(
                    timestamp=timestamp,
                    latitude=_as_float(row.get("latitude")) or 0.0,
                    longitude=_as_float(row.get("longitude")) or 0.0,
                    speed_kmh=_as_float(row.get("speed")),
                )
            )
        points.sort(key=lambda point: point.timestamp)
        return points

    async def _diagnostic(self, diagnostic_id: str) -> dict[str, Any]:
        # Diagnostic metadata is static; cache lookups for the life of the session.
        if diagnostic_id not in self._diagnostics:
            rows = await self._get("Diagnostic", {"id": diagnostic_id})
            self._diagnostics[diagnostic_id] = rows[0] if rows else {}
        return self._diagnostics[diagnostic_id]

    async def get_status_data(self, device_id: str, from_date: datetime, to_date: datetime) -> list[StatusReading]:
        rows = await self._get(
            "StatusData",
            {
                "deviceSearch": {"id": device_id},
                "fromDate": format_geotab_datetime(from_date),
                "toDate": format_geotab_datetime(to_date),
            },
        )
        readings: list[StatusReading] = []
        for row in rows:
            timestamp = parse_geotab_datetime(row.get("dateTime"))
            diagnostic_id = _entity_id(row.get("diagnostic"))
            if timestamp is None or diagnostic_id is None:
                continue
            diagnostic = await self._diagnostic(diagnostic_id)
            code = diagnostic.get("code")
            readings.append(
                StatusReading(
                    timestamp=timestamp,
                    diagnostic_id=diagnostic_id,
                    diagnostic_name=str(diagnostic.get("name") or diagnostic_id),
                    value=_as_float(row.get("data")),
                    code=str(code) if code is not None else None,
                    unit=_entity_id(diagnostic.get("unitOfMeasure")),
                )
            )
        readings.sort(key=lambda reading: reading.timestamp)
        return readings

    async def get_device(self, device_id: str) -> DeviceInfo | None:
        rows = await self._get("Device", {"id": device_id})
        if not rows:
            return None
        row = rows[0]
        return DeviceInfo(
            id=device_id,
            name=row.get("name") or None,
            vin=row.get("vehicleIdentificationNumber") or None,
            plate=row.get("licensePlate") or None,
        )

    async def get_driver(self, driver_id: str) -> DriverInfo | None:
        rows = await self._get("User", {"id": driver_id})
        if not rows:
            return None
        row = rows[0]
        full_name = " ".join(part for part in (row.get("firstName"), row.get("lastName")) if part)
        login = row.get("name") or None
        return DriverInfo(
            id=driver_id,
            name=full_name or login,
            license_number=row.get("licenseNumber") or None,
            license_state=row.get("licenseProvince") or None,
            phone=row.get("phoneNumber") or None,
            # Geotab logins are usually e-mail addresses.
            email=login if login and "@" in login else None,
        )


class GeotabConnector:
    def __init__(self, transport: GeotabTransport | None = None) -> None:
        self._settings = get_settings()
        self._transport = transport or GeotabTransport()

    async def authenticate(self, tenant_id: str, credentials: TenantCredentials) -> GeotabApi:
        server = credentials.server or self._settings.geotab_default_server
        result = await self._transport.call(
            server,
            "Authenticate",
            {
                "database": credentials.database,
                "userName": credentials.user_name,
                "password": credentials.password,
            },
        )
        if not isinstance(result, dict) or not isinstance(result.get("credentials"), dict):
            raise AuthenticationError(f"Geotab authentication returned no session for tenant {tenant_id}")
        path = result.get("path")
        # "ThisServer" means the database lives on the server we authenticated against.
        if isinstance(path, str) and path and path != "ThisServer":
            server = path
        logger.info("geotab_authenticated tenant_id=%s server=%s", tenant_id, server)
        return GeotabApi(
            tenant_id,
            server=server,
            credentials=dict(result["credentials"]),
            transport=self._transport,
        )
