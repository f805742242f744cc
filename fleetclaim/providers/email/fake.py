from __future__ import annotations

from fleetclaim.core.errors import UpstreamUnavailableError
from fleetclaim.providers.email.base import EmailMessage


class FakeEmailSender:
    def __init__(self, *, fail: bool = False) -> None:
        # Capture outbound messages so tests can assert on recipients and content.
        self.sent: list[EmailMessage] = []
        self._fail = fail

    async def send(self, message: EmailMessage) -> None:
        if self._fail:
            raise UpstreamUnavailableError("email delivery failed")
        self.sent.append(message)
