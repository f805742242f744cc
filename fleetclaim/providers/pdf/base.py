from __future__ import annotations

from typing import Protocol

from fleetclaim.domain.models import IncidentReport


class PdfRenderer(Protocol):
    async def render(self, report: IncidentReport) -> bytes:
        ...
