from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
from dataclasses import dataclass

from fleetclaim.core.config import get_settings


_SEPARATOR = "|"
_SIGNATURE_BYTES = 8
_TOKEN_ALPHABET = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class ShareToken:
    report_id: str
    tenant_id: str
    signature: str


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode_strict(token: str) -> bytes | None:
    # Reject anything that is not the canonical unpadded encoding of its bytes.
    if not _TOKEN_ALPHABET.fullmatch(token) or len(token) % 4 == 1:
        return None
    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError):
        return None
    if _b64url_encode(raw) != token:
        return None
    return raw


class ShareLinkCodec:
    """Stateless signed capability tokens for public report links.

    ``token = b64url(report_id|tenant_id|sig)`` with
    ``sig = b64(HMAC-SHA256(key, "report_id:tenant_id")[:8])``. Tokens never
    expire; rotating the signing key revokes every outstanding link.
    """

    def __init__(self, signing_key: str | None = None, *, base_url: str | None = None) -> None:
        settings = get_settings()
        key = signing_key if signing_key is not None else settings.share_link_signing_key
        if not key:
            raise ValueError("share link signing key must not be empty")
        self._key = key.encode("utf-8")
        self._base_url = (base_url if base_url is not None else settings.share_link_base_url).rstrip("/")

    def _signature(self, report_id: str, tenant_id: str) -> str:
        digest = hmac.new(self._key, f"{report_id}:{tenant_id}".encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest[:_SIGNATURE_BYTES]).decode("ascii").rstrip("=")

    def encode(self, report_id: str, tenant_id: str) -> str:
        if not report_id or not tenant_id:
            raise ValueError("report_id and tenant_id are required")
        if _SEPARATOR in report_id or _SEPARATOR in tenant_id:
            raise ValueError("report_id and tenant_id must not contain '|'")
        signature = self._signature(report_id, tenant_id)
        payload = _SEPARATOR.join((report_id, tenant_id, signature))
        return _b64url_encode(payload.encode("utf-8"))

    def decode(self, token: str) -> ShareToken | None:
        # Every failure collapses to None so callers cannot tell which check failed.
        if not isinstance(token, str):
            return None
        raw = _b64url_decode_strict(token)
        if raw is None:
            return None
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
        parts = text.split(_SEPARATOR)
        if len(parts) != 3 or not all(parts):
            return None
        report_id, tenant_id, provided = parts
        expected = self._signature(report_id, tenant_id)
        if not hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8")):
            return None
        return ShareToken(report_id=report_id, tenant_id=tenant_id, signature=provided)

    def share_url(self, report_id: str, tenant_id: str) -> str:
        return f"{self._base_url}/r/{self.encode(report_id, tenant_id)}"
