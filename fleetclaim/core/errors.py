from __future__ import annotations


class FleetClaimError(Exception):
    """Base error for FleetClaim."""


class ProviderConfigError(FleetClaimError):
    """Missing or invalid collaborator configuration."""


class AuthenticationError(FleetClaimError):
    """Credential lookup or remote authentication failed for a tenant."""


class CredentialNotFoundError(AuthenticationError):
    """No credentials are registered for the tenant."""


class VendorApiError(FleetClaimError):
    """Telematics API call failed or returned an error payload."""


class MalformedRecordError(FleetClaimError):
    """A stored record could not be parsed into an envelope."""


class RecordTooLargeError(FleetClaimError):
    """Serialized record exceeds the backing store's size ceiling."""


class ReportTooLargeError(FleetClaimError):
    """Report cannot be compacted under the storage ceiling."""


class NotFoundError(FleetClaimError):
    """Referenced report or request no longer exists."""


class InvalidTokenError(FleetClaimError):
    """Share token failed structural or signature checks."""


class UpstreamUnavailableError(FleetClaimError):
    """Optional collaborator (weather, email, notification) failed."""


class IntegrationUnavailableError(UpstreamUnavailableError):
    """Circuit breaker is open for an external integration."""


class PollRunError(FleetClaimError):
    """A poll pass could not make progress for any tenant."""


class VendorThrottledError(VendorApiError):
    """Vendor asked the caller to back off; safe to retry after a delay."""

    def __init__(self, message: str, *, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s
