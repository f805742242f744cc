from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from fleetclaim.domain.models import utc_now

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    # Liveness only; vendor and Redis reachability are not checked here.
    return HealthResponse(status="ok", timestamp=utc_now())
