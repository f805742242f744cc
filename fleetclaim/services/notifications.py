from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fleetclaim.core.config import get_settings
from fleetclaim.core.templates import render_template
from fleetclaim.domain.models import CustomerConfig, IncidentReport, severity_at_least, utc_now
from fleetclaim.providers.email.base import EmailAttachment, EmailMessage, EmailSender
from fleetclaim.services.webhooks import post_signed_json


logger = logging.getLogger(__name__)

REPORT_GENERATED_EVENT = "incident.report.generated"
# Relays commonly reject attachments much larger than this.
_MAX_ATTACHMENT_B64 = 5_000_000


@dataclass(frozen=True)
class NotificationOutcome:
    emails_sent: int = 0
    emails_failed: int = 0
    webhook_sent: bool | None = None
    skipped: bool = False


def build_email_subject(report: IncidentReport) -> str:
    return f"[{report.severity.value.title()}] Incident Report: {report.vehicle_name or report.vehicle_id}"


def build_email_text(report: IncidentReport) -> str:
    lines = [
        f"Severity: {report.severity.value.title()}",
        f"Vehicle: {report.vehicle_name or report.vehicle_id}",
        f"Driver: {report.driver_name or 'Unknown'}",
        f"Occurred: {report.occurred_at.isoformat()}",
        "",
        report.summary,
    ]
    if report.share_url:
        lines.extend(["", f"View full report: {report.share_url}"])
    return "\n".join(lines)


def build_email_html(report: IncidentReport) -> str:
    rows = [
        ("Severity", report.severity.value.title()),
        ("Vehicle", report.vehicle_name or report.vehicle_id),
        ("Driver", report.driver_name or "Unknown"),
        ("Occurred", report.occurred_at.isoformat()),
    ]
    return render_template("report_email.html", report=report, rows=rows)


def build_webhook_payload(report: IncidentReport) -> dict[str, Any]:
    evidence = report.evidence
    return {
        "eventType": REPORT_GENERATED_EVENT,
        "timestamp": utc_now().isoformat(),
        "report": {
            "id": report.id,
            "incidentId": report.incident_id,
            "vehicleId": report.vehicle_id,
            "vehicleName": report.vehicle_name,
            "driverId": report.driver_id,
            "driverName": report.driver_name,
            "occurredAt": report.occurred_at.isoformat(),
            "generatedAt": report.generated_at.isoformat(),
            "severity": report.severity.value,
            "summary": report.summary,
            "shareUrl": report.share_url,
            "evidence": {
                "gpsPointCount": len(evidence.gps_trail),
                "maxSpeedKmh": evidence.max_speed_kmh,
                "speedAtEventKmh": evidence.speed_at_event_kmh,
                "decelerationMps2": evidence.deceleration_mps2,
                "weatherCondition": evidence.weather_condition,
                "diagnosticCount": len(evidence.diagnostics),
            },
        },
    }


def report_email(report: IncidentReport, recipient: str) -> EmailMessage:
    attachments: list[EmailAttachment] = []
    if report.pdf_base64 and len(report.pdf_base64) < _MAX_ATTACHMENT_B64:
        attachments.append(
            EmailAttachment(
                filename=f"incident-report-{report.id}.pdf",
                content_type="application/pdf",
                content_base64=report.pdf_base64,
            )
        )
    return EmailMessage(
        to=recipient,
        subject=build_email_subject(report),
        text_body=build_email_text(report),
        html_body=build_email_html(report),
        attachments=attachments,
    )


class NotificationService:
    """Best-effort fan-out of new reports to a tenant's e-mail and webhook targets."""

    def __init__(
        self,
        email_sender: EmailSender | None = None,
        *,
        webhook_secret: str | None = None,
        enabled: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._email_sender = email_sender
        self._webhook_secret = webhook_secret if webhook_secret is not None else settings.notify_webhook_secret
        self._enabled = settings.notifications_enabled if enabled is None else enabled

    async def notify(self, report: IncidentReport, config: CustomerConfig) -> NotificationOutcome:
        if not self._enabled or not severity_at_least(report.severity, config.severity_threshold):
            return NotificationOutcome(skipped=True)

        sent = failed = 0
        if config.notify_emails and self._email_sender is None:
            logger.warning("notification_email_unconfigured report_id=%s", report.id)
        elif self._email_sender is not None:
            for recipient in config.notify_emails:
                try:
                    await self._email_sender.send(report_email(report, recipient))
                    sent += 1
                except Exception as exc:  # noqa: BLE001 - notifications never fail report generation
                    failed += 1
                    logger.warning("notification_email_failed report_id=%s error=%s", report.id, exc)

        webhook_sent: bool | None = None
        if config.notify_webhook:
            result = await post_signed_json(
                config.notify_webhook,
                build_webhook_payload(report),
                integration="notify.webhook",
                event_type=REPORT_GENERATED_EVENT,
                secret=self._webhook_secret,
            )
            webhook_sent = result.sent
            if not result.sent:
                logger.warning(
                    "notification_webhook_failed report_id=%s status=%s message=%s",
                    report.id,
                    result.status_code,
                    result.message,
                )

        logger.info(
            "notifications_sent report_id=%s emails=%s email_failures=%s webhook=%s",
            report.id,
            sent,
            failed,
            webhook_sent,
        )
        return NotificationOutcome(emails_sent=sent, emails_failed=failed, webhook_sent=webhook_sent)
