"""Best-effort email notifications for intake and review links.

Delivery never affects the outcome of the request that triggered it: the
SMTP round trip runs in a worker thread after the response, failures are
logged and recorded on the application as a :class:`DeliveryOutcome`.

SMTP is configured via environment variables:
- SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, SMTP_FROM_EMAIL
- GRANTS_TO_EMAIL (grants-team inbox for new application summaries)

With SMTP unconfigured, messages are logged instead of sent.
"""

import asyncio
import html
import logging
import os
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Sequence

from grant_intake.config import PUBLIC_BASE_URL
from grant_intake.helpers.time_utils import Clock, utc_now
from grant_intake.models.submission_models import ApplicationRecord, DeliveryOutcome
from grant_intake.services.review_links import MintedShare
from grant_intake.services.submission_store import SubmissionStore

logger = logging.getLogger(__name__)

DEFAULT_GRANTS_TO_EMAIL = "grants@bitcoinforthearts.org"
MAX_SUBJECT_CHARS = 200


@dataclass(frozen=True)
class SmtpSettings:
    host: Optional[str]
    port: int
    user: Optional[str]
    password: Optional[str]
    from_email: Optional[str]

    @property
    def configured(self) -> bool:
        return bool(self.host and self.user and self.password and self.from_email)

    @classmethod
    def from_env(cls) -> "SmtpSettings":
        return cls(
            host=os.getenv("SMTP_HOST"),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=os.getenv("SMTP_USER"),
            password=os.getenv("SMTP_PASSWORD"),
            from_email=os.getenv("SMTP_FROM_EMAIL"),
        )


class EmailNotifier:
    """Send plain-text + HTML mail over SMTP with STARTTLS."""

    def __init__(self, settings: Optional[SmtpSettings] = None, clock: Clock = utc_now) -> None:
        self.settings = settings or SmtpSettings.from_env()
        self.clock = clock

    @property
    def configured(self) -> bool:
        return self.settings.configured

    def _build_message(
        self,
        to: Sequence[str],
        subject: str,
        text: str,
        html_body: Optional[str],
        reply_to: Optional[str],
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject[:MAX_SUBJECT_CHARS]
        msg["From"] = self.settings.from_email or ""
        msg["To"] = ", ".join(to)
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.attach(MIMEText(text, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_sync(self, to: Sequence[str], msg: MIMEMultipart) -> None:
        s = self.settings
        with smtplib.SMTP(s.host, s.port) as server:
            server.starttls()
            server.login(s.user, s.password)
            server.sendmail(s.from_email, list(to), msg.as_string())

    async def send(
        self,
        to: Sequence[str],
        subject: str,
        text: str,
        html_body: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> DeliveryOutcome:
        if not self.configured:
            logger.info(
                "[EMAIL STUB] Would send to %s\n  Subject: %s\n"
                "  (Configure SMTP_HOST, SMTP_USER, SMTP_PASSWORD, SMTP_FROM_EMAIL to enable sending)",
                ", ".join(to),
                subject,
            )
            return DeliveryOutcome(
                ok=False, failed_at=self.clock(), error="Email is not configured."
            )

        msg = self._build_message(to, subject, text, html_body, reply_to)
        try:
            await asyncio.to_thread(self._send_sync, to, msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email to %s: %s", ", ".join(to), e)
            return DeliveryOutcome(
                ok=False, failed_at=self.clock(), error=type(e).__name__
            )
        logger.info("Email sent to %s: %s", ", ".join(to), subject)
        return DeliveryOutcome(ok=True)


def _pre(text: str) -> str:
    return (
        '<pre style="white-space: pre-wrap; background: #f6f6f6; '
        f'padding: 12px; border-radius: 8px;">{html.escape(text)}</pre>'
    )


class ApplicationNotifications:
    """Compose and dispatch the messages tied to an application's lifecycle."""

    def __init__(
        self,
        notifier: EmailNotifier,
        store: SubmissionStore,
        grants_to: Optional[str] = None,
        base_url: str = PUBLIC_BASE_URL,
    ) -> None:
        self.notifier = notifier
        self.store = store
        self.grants_to = grants_to or os.getenv("GRANTS_TO_EMAIL") or DEFAULT_GRANTS_TO_EMAIL
        self.base_url = base_url

    def submission_summary(self, record: ApplicationRecord) -> tuple[str, str, str]:
        applicant = record.applicant
        downloads = "\n".join(
            f"{u.field_name}: {self.base_url}/api/admin/files/{u.file_id} ({u.filename})"
            for u in record.uploads
        )
        link_lines = []
        if record.links.fiscal_sponsor_agreement:
            link_lines.append(f"fiscalSponsorAgreementLink: {record.links.fiscal_sponsor_agreement}")
        if record.links.art_samples:
            link_lines.append(f"artSamplesLinks:\n{record.links.art_samples}")
        links = "\n\n".join(link_lines)

        subject = f"New grant application: {applicant.legal_name}"
        text = "\n".join(
            [
                "New grant application submitted",
                "",
                f"Application ID: {record.id}",
                f"Name/DBA: {applicant.legal_name}",
                f"Applicant type: {applicant.applicant_type}",
                f"Email: {applicant.email}",
                f"Disciplines: {', '.join(applicant.disciplines)}",
                f"Project title: {record.project.title}",
                f"Requested amount: {record.funding.requested_amount:g}",
                "",
                "Uploads:",
                downloads or "(none)",
                "",
                "Links:",
                links or "(none)",
                "",
                f"IP: {record.meta.ip or 'unknown'}",
            ]
        )
        html_body = (
            "<div>"
            "<h2>New grant application</h2>"
            f"<p><strong>Application ID:</strong> {html.escape(record.id or '')}</p>"
            f"<p><strong>Name/DBA:</strong> {html.escape(applicant.legal_name)}</p>"
            f"<p><strong>Applicant type:</strong> {html.escape(applicant.applicant_type)}</p>"
            f"<p><strong>Email:</strong> {html.escape(applicant.email)}</p>"
            f"<p><strong>Project title:</strong> {html.escape(record.project.title)}</p>"
            "<h3>Uploads</h3>"
            f"{_pre(downloads or '(none)')}"
            "<h3>Links</h3>"
            f"{_pre(links or '(none)')}"
            "</div>"
        )
        return subject, text, html_body

    def applicant_confirmation(self, record: ApplicationRecord) -> tuple[str, str]:
        subject = f"We received your grant application: {record.project.title}"
        text = "\n".join(
            [
                f"Hi {record.applicant.legal_name},",
                "",
                "Thank you for applying. Your grant application has been received.",
                f"Reference: {record.id}",
                "",
                "We will contact you at this address if we need more information.",
            ]
        )
        return subject, text

    async def on_submission(self, record: ApplicationRecord) -> None:
        """Notify the grants team and the applicant; record both outcomes."""
        if not record.id:
            return
        subject, text, html_body = self.submission_summary(record)
        team = await self.notifier.send(
            [self.grants_to], subject, text, html_body, reply_to=record.applicant.email
        )
        await self._record(record.id, "email_notification", team)

        subject, text = self.applicant_confirmation(record)
        confirmation = await self.notifier.send([record.applicant.email], subject, text)
        await self._record(record.id, "applicant_confirmation", confirmation)

    async def _record(self, submission_id: str, kind: str, outcome: DeliveryOutcome) -> None:
        try:
            await self.store.record_delivery(submission_id, kind, outcome)
        except Exception as e:
            logger.error("Failed to record %s for %s: %s", kind, submission_id, e)

    async def send_review_link(
        self, record: ApplicationRecord, minted: MintedShare
    ) -> DeliveryOutcome:
        subject = (
            "Grant application for review: "
            f"{record.applicant.legal_name or record.project.title or record.id}"
        )
        parts = [
            "Grant application review request",
            "",
            f"Applicant: {record.applicant.legal_name}",
            f"Project: {record.project.title}",
            "",
        ]
        if minted.message and minted.message.strip():
            parts += ["Message:", minted.message.strip(), ""]
        parts += [
            f"Review link (expires in {minted.lifetime_days:g} days):",
            minted.review_url,
            "",
            "Note: this link provides read-only access to the application.",
        ]
        html_body = (
            "<div>"
            "<h2>Grant application review request</h2>"
            f"<p><strong>Applicant:</strong> {html.escape(record.applicant.legal_name)}</p>"
            f"<p><strong>Project:</strong> {html.escape(record.project.title)}</p>"
            + (f"<p><strong>Message:</strong></p>{_pre(minted.message.strip())}" if minted.message else "")
            + f"<p><strong>Review link (expires in {minted.lifetime_days:g} days):</strong></p>"
            f'<p><a href="{html.escape(minted.review_url)}">{html.escape(minted.review_url)}</a></p>'
            "</div>"
        )
        return await self.notifier.send(minted.recipients, subject, "\n".join(parts), html_body)
