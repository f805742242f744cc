from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Geotab AddInData entries are capped at 10,000 characters of serialized details.
RECORD_MAX_BYTES = 10_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "fleetclaim"
    log_level: str = "INFO"

    # Redis connection for feed cursors, rate limiting and breaker coordination.
    redis_url: str = "redis://localhost:6379/0"

    # Select the telematics backend (geotab or memory for local runs).
    telematics_provider: str = "geotab"
    # Server used when tenant credentials do not pin one.
    geotab_default_server: str = "my.geotab.com"
    # Application tag scoping every stored record (Geotab AddInData addInId).
    add_in_id: str = "1de32f8e-8401-4df2-930e-8751f2d66ba7"

    # Credential lookup backend; env reads a JSON mapping, file reads a JSON document.
    credential_provider: str = "env"
    # JSON object mapping tenant id -> {database, userName, password, server}.
    tenant_credentials_json: str = "{}"
    tenant_credentials_path: str | None = None

    # Keep cached sessions well inside the vendor's session lifetime.
    session_ttl_s: int = 3600

    # Bound each feed page and the number of pages drained per run.
    feed_results_limit: int = 1000
    feed_max_pages: int = 5
    # First poll for a tenant only looks this far back instead of replaying history.
    feed_initial_lookback_hours: int = 24

    # Cursor persistence backend (redis or memory).
    cursor_store: str = "redis"
    cursor_redis_prefix: str = "fleetclaim:cursor"

    # Evidence window around each incident.
    evidence_window_before_s: int = 300
    evidence_window_after_s: int = 300
    # Look further back for hard driving events leading up to the incident.
    hard_event_lookback_s: int = 1800

    # Storage ceiling and sampling budgets for persisted reports.
    record_max_bytes: int = RECORD_MAX_BYTES
    compact_max_gps_points: int = 60
    compact_max_diagnostics: int = 10
    compact_max_hard_events: int = 5

    # Defaults applied when a tenant has not stored its own config record.
    default_auto_generate_rules: str = "HarshBraking,Collision,Speeding"
    default_manual_request_rules: str = "Collision"
    default_severity_threshold: str = "medium"
    # Skip incidents that already have a stored report to limit duplicates after restarts.
    skip_existing_incident_reports: bool = True

    # Share links are signed capabilities; rotate the key to revoke all links.
    share_link_base_url: str = "https://fleetclaim.app"
    share_link_signing_key: str = "dev-share-link-signing-key"

    # Collaborator selection: none disables the feature, fake is deterministic for tests.
    weather_provider: str = "open_meteo"
    pdf_renderer: str = "none"
    email_provider: str = "none"
    email_webhook_url: str | None = None
    email_webhook_secret: str | None = None
    # Sign outbound notification webhooks when a secret is configured.
    notify_webhook_secret: str | None = None
    notifications_enabled: bool = True

    # Centralize external call timeouts for integrations (ms).
    ext_call_timeout_ms: int = 15000
    # Retry transient integration failures for a bounded number of attempts.
    ext_retry_max_attempts: int = 2
    # Base backoff between retry attempts (ms), jittered per call.
    ext_retry_backoff_ms: int = 200
    # Upper bound on a server-provided Retry-After before giving up on the attempt (s).
    ext_retry_after_cap_s: float = 30.0
    # Circuit breaker thresholds for external integrations.
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_half_open_trials: int = 2
    cb_redis_prefix: str = "fleetclaim:cb"

    # Per-caller limits for public share-link endpoints.
    rate_limit_enabled: bool = True
    # Bucket storage: redis shares limits across replicas, local keeps them in-process.
    rl_backend: str = "redis"
    rl_fail_mode: str = "open"
    rl_share_rps: float = 0.5
    rl_share_burst: int = 30
    rl_pdf_rps: float = 0.17
    rl_pdf_burst: int = 10
    rl_default_rps: float = 1.7
    rl_default_burst: int = 100
    rl_redis_prefix: str = "fleetclaim:rl"

    # Read-through cache window for reports served over share links.
    report_cache_ttl_s: int = 300
    # Least-recently-read reports are evicted past this many entries.
    report_cache_max_entries: int = 1024

    # Bound a full poll pass so a stalled vendor cannot wedge the job.
    poll_run_timeout_s: int = 900
    # Cron cadence used by the arq worker when it drives the poller.
    poll_interval_minutes: int = 5


@lru_cache
def get_settings() -> Settings:
    return Settings()


def split_csv(value: str) -> list[str]:
    # Parse comma-delimited settings into trimmed, non-empty items.
    return [item.strip() for item in value.split(",") if item.strip()]
