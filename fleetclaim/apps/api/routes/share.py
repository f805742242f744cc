from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import HTMLResponse, Response
from pydantic import BaseModel, Field

from fleetclaim.apps.api.deps import get_shared_report_service
from fleetclaim.apps.api.errors import NOT_FOUND_MESSAGE
from fleetclaim.apps.api.pages import SECURITY_HEADERS, render_error_page, render_report_page
from fleetclaim.apps.api.rate_limit import enforce_rate_limit
from fleetclaim.core.errors import InvalidTokenError, NotFoundError
from fleetclaim.services.shared_reports import SharedReportService, is_valid_email


logger = logging.getLogger(__name__)

router = APIRouter(tags=["share"], dependencies=[Depends(enforce_rate_limit)])


class SendEmailRequest(BaseModel):
    email: str
    message: str | None = Field(default=None, max_length=2000)


class SendEmailResponse(BaseModel):
    success: bool
    message: str


@router.get("/r/{token}", response_class=HTMLResponse)
async def view_shared_report(
    token: str,
    service: SharedReportService = Depends(get_shared_report_service),
) -> HTMLResponse:
    try:
        report = await service.get_report(token)
    except (InvalidTokenError, NotFoundError):
        return HTMLResponse(render_error_page(NOT_FOUND_MESSAGE), status_code=404, headers=SECURITY_HEADERS)
    return HTMLResponse(render_report_page(report, token), headers=SECURITY_HEADERS)


@router.get("/r/{token}/pdf")
async def download_shared_report_pdf(
    token: str,
    service: SharedReportService = Depends(get_shared_report_service),
) -> Response:
    report, pdf = await service.render_pdf(token)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="incident-report-{report.id}.pdf"',
            "Cache-Control": "no-store",
            "X-Content-Type-Options": "nosniff",
        },
    )


@router.post("/r/{token}/email", response_model=SendEmailResponse)
async def email_shared_report(
    token: str,
    payload: SendEmailRequest,
    service: SharedReportService = Depends(get_shared_report_service),
) -> SendEmailResponse:
    # Validate the address before touching the token so bad input never costs a vendor call.
    if not is_valid_email(payload.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_EMAIL", "message": "Valid email address required"},
        )
    await service.send_email(token, payload.email, payload.message)
    return SendEmailResponse(success=True, message=f"Email sent to {payload.email.strip()}")
