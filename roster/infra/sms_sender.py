# roster/infra/sms_sender.py
"""
Outbound SMS via the Twilio REST API.

``send`` returns the provider message SID or raises ``DeliveryError``.
No retries here: outreach sends are at-most-once and the delivery
pipeline counts failures instead of repeating them.
"""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Sequence

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from roster.config import settings
from roster.core.errors import DeliveryError
from roster.infra.logging_config import get_logger, mask_phone
from roster.infra.metrics import inc_counter

logger = get_logger(__name__)


class TwilioSmsSender:
    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        client: Client | None = None,
    ):
        self._account_sid = account_sid or settings.twilio_account_sid
        self._auth_token = auth_token or settings.twilio_auth_token
        self._from = from_number or settings.twilio_phone_number
        self._client = client

    def is_configured(self) -> bool:
        return bool(self._client or (self._account_sid and self._auth_token and self._from))

    def _get_client(self) -> Client:
        if self._client is None:
            if not self.is_configured():
                raise DeliveryError("Twilio is not configured", channel="sms")
            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    async def send(
        self,
        to: str,
        body: str,
        *,
        status_callback: str | None = None,
        media_urls: Sequence[str] | None = None,
    ) -> str:
        client = self._get_client()

        message_kwargs = {"from_": self._from, "to": to, "body": body}
        if status_callback:
            message_kwargs["status_callback"] = status_callback
        if media_urls:
            message_kwargs["media_url"] = list(media_urls)

        loop = asyncio.get_running_loop()
        try:
            # twilio-python is blocking
            result = await loop.run_in_executor(
                None, partial(client.messages.create, **message_kwargs),
            )
        except TwilioException as exc:
            inc_counter("sms_send_total", status="error")
            code = getattr(exc, "code", None)
            raise DeliveryError(
                f"Twilio rejected message (code={code}): {exc}",
                channel="sms",
                recipient=mask_phone(to),
            ) from exc

        inc_counter("sms_send_total", status="sent")
        logger.info(f"SMS sent: sid={result.sid[:8]}***, to={mask_phone(to)}")
        return result.sid
