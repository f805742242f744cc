from __future__ import annotations

from fleetclaim.core.config import get_settings
from fleetclaim.core.errors import ProviderConfigError
from fleetclaim.providers.pdf.base import PdfRenderer
from fleetclaim.providers.pdf.fake import FakePdfRenderer
from fleetclaim.providers.pdf.document import ReportlabPdfRenderer


def get_pdf_renderer() -> PdfRenderer:
    settings = get_settings()
    provider = (settings.pdf_renderer or "none").lower()

    if provider == "none":
        raise ProviderConfigError("PDF_RENDERER is set to none")
    if provider == "fake":
        return FakePdfRenderer()
    if provider == "reportlab":
        return ReportlabPdfRenderer()

    raise ProviderConfigError(f"Unsupported PDF renderer: {provider}")
