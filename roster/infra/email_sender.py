# roster/infra/email_sender.py
"""
Outbound email over SMTP.

``send_batch`` opens one SMTP session per batch and reports a result
per item, so one bad address does not fail its neighbours.
"""
from __future__ import annotations

import asyncio
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Sequence

from roster.config import settings
from roster.core.errors import DeliveryError
from roster.core.notifications.payloads import EmailPayload, EmailResult
from roster.infra.logging_config import get_logger, mask_email
from roster.infra.metrics import inc_counter

logger = get_logger(__name__)


class SmtpEmailSender:
    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        from_address: str | None = None,
    ):
        self._host = host or settings.smtp_host
        self._port = port or settings.smtp_port
        self._user = user or settings.smtp_user
        self._password = password or settings.smtp_password
        self._from = from_address or settings.email_from

    def is_configured(self) -> bool:
        return bool(self._host and self._user and self._password)

    def _build(self, item: EmailPayload) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._from
        msg["To"] = item.to
        msg["Subject"] = item.subject
        msg["Message-ID"] = make_msgid(domain=self._from.rsplit("@", 1)[-1].rstrip(">"))
        if item.tags:
            msg["X-Tags"] = ",".join(item.tags)
        msg.set_content(item.body)
        if item.html:
            msg.add_alternative(item.html, subtype="html")
        return msg

    def _send_smtp(self, items: Sequence[EmailPayload]) -> list[EmailResult]:
        """Send a batch over one SMTP session (blocking)."""
        results: list[EmailResult] = []
        with smtplib.SMTP(self._host, self._port, timeout=30) as server:
            server.starttls()
            server.login(self._user, self._password)
            for item in items:
                msg = self._build(item)
                try:
                    refused = server.send_message(msg)
                except (smtplib.SMTPRecipientsRefused, smtplib.SMTPDataError, smtplib.SMTPSenderRefused) as exc:
                    results.append(EmailResult(to=item.to, ok=False, error=str(exc)))
                    continue
                if refused:
                    results.append(EmailResult(to=item.to, ok=False, error=str(refused)))
                else:
                    results.append(EmailResult(to=item.to, ok=True, message_id=msg["Message-ID"]))
        return results

    async def send_batch(self, items: Sequence[EmailPayload]) -> list[EmailResult]:
        if not items:
            return []
        if not self.is_configured():
            raise DeliveryError("SMTP is not configured", channel="email")

        loop = asyncio.get_running_loop()
        try:
            results = await loop.run_in_executor(None, self._send_smtp, list(items))
        except (smtplib.SMTPException, OSError) as exc:
            inc_counter("email_send_total", status="error", amount=len(items))
            raise DeliveryError(f"SMTP batch failed: {exc}", channel="email") from exc

        sent = sum(1 for r in results if r.ok)
        inc_counter("email_send_total", status="sent", amount=sent)
        for r in results:
            if not r.ok:
                logger.warning(f"Email rejected: to={mask_email(r.to)}, error={r.error}")
        return results
