from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_report_id() -> str:
    # Short prefixed ids keep share tokens compact.
    return f"rpt_{uuid4().hex[:12]}"


def new_request_id() -> str:
    return f"req_{uuid4().hex[:12]}"


class WireModel(BaseModel):
    # Stored payloads use camelCase keys shared with the tenant-facing add-in.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IncidentSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER: dict[IncidentSeverity, int] = {
    IncidentSeverity.LOW: 1,
    IncidentSeverity.MEDIUM: 2,
    IncidentSeverity.HIGH: 3,
    IncidentSeverity.CRITICAL: 4,
}


def severity_at_least(severity: IncidentSeverity, threshold: IncidentSeverity) -> bool:
    # Compare severities by rank rather than by enum value.
    return SEVERITY_ORDER[severity] >= SEVERITY_ORDER[threshold]


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED})


class GpsPoint(WireModel):
    timestamp: datetime
    latitude: float
    longitude: float
    speed_kmh: float | None = None


class DiagnosticSnapshot(WireModel):
    code: str
    description: str | None = None
    value: float | None = None
    unit: str | None = None
    recorded_at: datetime | None = None


class AccelerometerEvent(WireModel):
    timestamp: datetime
    g_force_x: float
    g_force_y: float
    g_force_z: float
    total_g_force: float
    event_type: str | None = None


class HardEvent(WireModel):
    timestamp: datetime
    event_type: str
    g_force: float | None = None
    speed_kmh: float | None = None
    duration_seconds: float | None = None
    latitude: float | None = None
    longitude: float | None = None


class HosStatus(WireModel):
    status: str | None = None
    drive_time_remaining_s: float | None = None
    duty_time_remaining_s: float | None = None


class EvidencePackage(WireModel):
    gps_trail: list[GpsPoint] = Field(default_factory=list)

    max_speed_kmh: float | None = None
    speed_at_event_kmh: float | None = None
    avg_speed_kmh: float | None = None
    deceleration_mps2: float | None = None

    # Impact analysis; the event list only travels with the full package.
    max_g_force: float | None = None
    impact_g_force: float | None = None
    impact_direction: str | None = None
    accelerometer_events: list[AccelerometerEvent] = Field(default_factory=list)

    hard_events_before_incident: list[HardEvent] = Field(default_factory=list)

    weather_condition: str | None = None
    temperature_celsius: float | None = None
    light_condition: str | None = None

    diagnostics: list[DiagnosticSnapshot] = Field(default_factory=list)
    seatbelt_fastened: bool | None = None
    headlights_on: bool | None = None
    fuel_level_percent: float | None = None
    engine_rpm: int | None = None
    abs_activated: bool | None = None
    traction_control_activated: bool | None = None
    stability_control_activated: bool | None = None

    driver_hos_status: HosStatus | None = None
    driver_incident_count_last_30_days: int | None = None
    time_driving_before_incident_s: float | None = None

    photo_urls: list[str] = Field(default_factory=list)


class IncidentReport(WireModel):
    id: str = Field(default_factory=new_report_id)
    incident_id: str = ""

    vehicle_id: str = ""
    vehicle_name: str | None = None
    vehicle_vin: str | None = None
    vehicle_plate: str | None = None

    driver_id: str | None = None
    driver_name: str | None = None
    driver_license_number: str | None = None
    driver_license_state: str | None = None
    driver_phone: str | None = None
    driver_email: str | None = None

    occurred_at: datetime
    incident_ended_at: datetime | None = None
    generated_at: datetime = Field(default_factory=utc_now)
    severity: IncidentSeverity = IncidentSeverity.MEDIUM
    summary: str = ""

    evidence: EvidencePackage = Field(default_factory=EvidencePackage)
    # Rendered document bytes; never persisted.
    pdf_base64: str | None = None
    share_url: str | None = None

    is_baseline_report: bool = False
    notes: str | None = None
    notes_updated_at: datetime | None = None
    notes_updated_by: str | None = None


class ReportRequest(WireModel):
    id: str = Field(default_factory=new_request_id)
    device_id: str
    device_name: str | None = None
    from_date: datetime
    to_date: datetime
    # Legacy requests may target one incident instead of a date range.
    incident_id: str | None = None
    force_report: bool = False

    requested_by: str | None = None
    requested_at: datetime = Field(default_factory=utc_now)
    status: RequestStatus = RequestStatus.PENDING
    error_message: str | None = None

    incidents_found: int | None = None
    reports_generated: int | None = None


class CustomerConfig(WireModel):
    notify_emails: list[str] = Field(default_factory=list)
    notify_webhook: str | None = None
    severity_threshold: IncidentSeverity = IncidentSeverity.MEDIUM
    auto_generate_rules: list[str] = Field(
        default_factory=lambda: ["HarshBraking", "Collision", "Speeding"]
    )
    manual_request_rules: list[str] = Field(default_factory=lambda: ["Collision"])


class IncidentEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    device_id: str | None
    driver_id: str | None = None
    rule_name: str = ""
    active_from: datetime
    active_to: datetime | None = None


def rule_matches(rule_name: str, patterns: list[str]) -> bool:
    # Case-insensitive substring match so "Collision" covers "Minor Collision Detected".
    lowered = rule_name.lower()
    return any(pattern.lower() in lowered for pattern in patterns if pattern)
