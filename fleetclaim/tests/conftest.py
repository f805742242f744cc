from __future__ import annotations

import pytest

from fleetclaim.core.config import get_settings
from fleetclaim.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch) -> None:
    # Pin collaborators to local/fake backends so no test reaches Redis or the network.
    monkeypatch.setenv("TELEMATICS_PROVIDER", "memory")
    monkeypatch.setenv("CURSOR_STORE", "memory")
    monkeypatch.setenv("WEATHER_PROVIDER", "none")
    monkeypatch.setenv("PDF_RENDERER", "none")
    monkeypatch.setenv("EMAIL_PROVIDER", "none")
    monkeypatch.setenv("RL_BACKEND", "local")
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("SHARE_LINK_SIGNING_KEY", "test-signing-key")
    monkeypatch.setenv("SHARE_LINK_BASE_URL", "https://claims.example.test")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
