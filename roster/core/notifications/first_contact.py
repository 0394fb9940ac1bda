# roster/core/notifications/first_contact.py
"""
First-contact detection.

A recipient with no prior outreach, call-card or push record gets a
one-time contact card (vCard) attached to their SMS, so the sender's
number is saved on their phone. Later sends omit it.

The check is a read followed by a send, not a lock: two concurrent first
sends to the same address may both attach the card. That duplication
is bounded (one extra card) and accepted.
"""
from __future__ import annotations

from dataclasses import replace

from roster.core.notifications.payloads import NotificationType, SmsPayload
from roster.core.ports import AsyncNotificationLog

FIRST_CONTACT_TYPES = (
    NotificationType.CALL_CARD_SENT,
    NotificationType.CALL_CARD_PUSH_SENT,
    NotificationType.OUTREACH_SENT,
)


class FirstContactDetector:
    def __init__(self, log: AsyncNotificationLog, contact_card_url: str):
        self._log = log
        self._contact_card_url = contact_card_url

    async def is_first_contact(self, address: str) -> bool:
        return not await self._log.has_prior(address, FIRST_CONTACT_TYPES)

    async def prepare(self, payload: SmsPayload) -> SmsPayload:
        if self._contact_card_url in payload.media_urls:
            return payload
        if not await self.is_first_contact(payload.to):
            return payload
        return replace(payload, media_urls=payload.media_urls + (self._contact_card_url,))
