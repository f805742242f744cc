from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content_type: str
    content_base64: str


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text_body: str
    html_body: str | None = None
    attachments: list[EmailAttachment] = field(default_factory=list)


class EmailSender(Protocol):
    async def send(self, message: EmailMessage) -> None:
        ...
