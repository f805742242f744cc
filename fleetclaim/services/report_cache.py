from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Callable

from fleetclaim.core.config import get_settings
from fleetclaim.domain.models import IncidentReport


class ReportCache:
    # Short-lived read-through cache for shared reports to spare the vendor API.
    def __init__(
        self,
        ttl_s: int | None = None,
        *,
        max_entries: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._ttl_s = ttl_s if ttl_s is not None else settings.report_cache_ttl_s
        self._max_entries = max(1, max_entries if max_entries is not None else settings.report_cache_max_entries)
        self._time = time_source or time.monotonic
        # Ordered by last read so the front is always the eviction candidate.
        self._entries: OrderedDict[tuple[str, str], tuple[float, IncidentReport]] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, tenant_id: str, report_id: str) -> IncidentReport | None:
        if self._ttl_s <= 0:
            return None
        key = (tenant_id, report_id)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, report = entry
            if self._time() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return report

    async def set(self, tenant_id: str, report_id: str, report: IncidentReport) -> None:
        if self._ttl_s <= 0:
            return
        key = (tenant_id, report_id)
        async with self._lock:
            now = self._time()
            self._sweep(now)
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = (now + self._ttl_s, report)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
