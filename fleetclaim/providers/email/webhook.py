from __future__ import annotations

from dataclasses import asdict

from fleetclaim.core.errors import UpstreamUnavailableError
from fleetclaim.providers.email.base import EmailMessage
from fleetclaim.services.webhooks import post_signed_json


class WebhookEmailSender:
    """Hand messages to a mail relay that accepts signed JSON webhooks."""

    def __init__(self, url: str, *, secret: str | None = None) -> None:
        self._url = url
        self._secret = secret

    async def send(self, message: EmailMessage) -> None:
        result = await post_signed_json(
            self._url,
            asdict(message),
            integration="email.webhook",
            event_type="email.send",
            secret=self._secret,
        )
        if not result.sent:
            raise UpstreamUnavailableError(f"Email relay rejected message: {result.message}")
