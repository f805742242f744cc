from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ValidationError

from fleetclaim.core.errors import MalformedRecordError
from fleetclaim.domain.models import CustomerConfig, IncidentReport, ReportRequest


Payload = Union[IncidentReport, ReportRequest, CustomerConfig]


class EnvelopeType(str, Enum):
    REPORT = "report"
    REPORT_REQUEST = "reportRequest"
    CONFIG = "config"


_PAYLOAD_MODELS: dict[EnvelopeType, type[BaseModel]] = {
    EnvelopeType.REPORT: IncidentReport,
    EnvelopeType.REPORT_REQUEST: ReportRequest,
    EnvelopeType.CONFIG: CustomerConfig,
}


@dataclass(frozen=True)
class Envelope:
    type: EnvelopeType
    payload: Payload

    def __post_init__(self) -> None:
        expected = _PAYLOAD_MODELS[self.type]
        if not isinstance(self.payload, expected):
            raise TypeError(f"{self.type.value} envelopes carry {expected.__name__} payloads")

    @classmethod
    def for_report(cls, report: IncidentReport) -> Envelope:
        return cls(EnvelopeType.REPORT, report)

    @classmethod
    def for_request(cls, request: ReportRequest) -> Envelope:
        return cls(EnvelopeType.REPORT_REQUEST, request)

    @classmethod
    def for_config(cls, config: CustomerConfig) -> Envelope:
        return cls(EnvelopeType.CONFIG, config)

    @property
    def logical_id(self) -> str:
        # Config is a per-tenant singleton; reports and requests carry their own ids.
        if isinstance(self.payload, CustomerConfig):
            return EnvelopeType.CONFIG.value
        return self.payload.id


def encode_envelope(envelope: Envelope) -> dict[str, Any]:
    return {
        "type": envelope.type.value,
        "payload": envelope.payload.model_dump(mode="json", by_alias=True, exclude_none=True),
    }


def serialize_envelope(envelope: Envelope) -> str:
    # Compact JSON; its UTF-8 length is what counts against the record ceiling.
    return json.dumps(encode_envelope(envelope), separators=(",", ":"), ensure_ascii=False)


def envelope_size(envelope: Envelope) -> int:
    return len(serialize_envelope(envelope).encode("utf-8"))


def decode_envelope(raw: Any) -> Envelope:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise MalformedRecordError("record is not valid JSON") from exc
    if not isinstance(raw, dict):
        raise MalformedRecordError("record is not an object")
    try:
        envelope_type = EnvelopeType(raw.get("type"))
    except ValueError as exc:
        raise MalformedRecordError(f"unknown envelope type {raw.get('type')!r}") from exc
    payload = raw.get("payload")
    if isinstance(payload, str):
        # Older writers stored the payload as an embedded JSON string.
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise MalformedRecordError("payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedRecordError("payload is not an object")
    try:
        model = _PAYLOAD_MODELS[envelope_type].model_validate(payload)
    except ValidationError as exc:
        raise MalformedRecordError(f"invalid {envelope_type.value} payload") from exc
    return Envelope(envelope_type, model)
