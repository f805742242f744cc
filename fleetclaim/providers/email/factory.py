from __future__ import annotations

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import ProviderConfigError
from fleetclaim.providers.email.base import EmailSender
from fleetclaim.providers.email.fake import FakeEmailSender
from fleetclaim.providers.email.webhook import WebhookEmailSender


def get_email_sender() -> EmailSender:
    settings = get_settings()
    provider = (settings.email_provider or "none").lower()

    if provider == "none":
        raise ProviderConfigError("EMAIL_PROVIDER is set to none")
    if provider == "fake":
        return FakeEmailSender()
    if provider == "webhook":
        if not settings.email_webhook_url:
            raise ProviderConfigError("EMAIL_WEBHOOK_URL is required for the webhook email provider")
        return WebhookEmailSender(settings.email_webhook_url, secret=settings.email_webhook_secret)

    raise ProviderConfigError(f"Unsupported email provider: {provider}")
