from __future__ import annotations

from fleetclaim.domain.models import IncidentReport


class FakePdfRenderer:
    def __init__(self) -> None:
        self.rendered: list[str] = []

    async def render(self, report: IncidentReport) -> bytes:
        # Deterministic bytes tagged with the report id for test assertions.
        self.rendered.append(report.id)
        return f"%PDF-FAKE {report.id} gps={len(report.evidence.gps_trail)}".encode("utf-8")
