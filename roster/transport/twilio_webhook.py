# roster/transport/twilio_webhook.py
"""
Twilio webhooks: inbound SMS replies and message delivery-status callbacks.

Both validate the X-Twilio-Signature header (HMAC-SHA1 over the public
URL and form params). Inbound replies are only enqueued here; the
``crewing.contact_attempt_response`` job classifies and resolves them,
deduplicated by MessageSid so Twilio's redeliveries are harmless.
"""
from __future__ import annotations

from fastapi import HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from twilio.request_validator import RequestValidator

from roster.config import settings
from roster.core.crewing.contact_attempt import JOB_CONTACT_ATTEMPT_RESPONSE
from roster.core.errors import NotFoundError
from roster.core.notifications.call_cards import STATUS_KIND_CALL_CARD, CallCardService
from roster.core.ports import JobQueue
from roster.infra.logging_config import LogContext, get_logger, mask_phone
from roster.infra.metrics import AppMetrics, inc_counter
from roster.transport.middleware import EMPTY_TWIML

logger = get_logger(__name__)


def _public_url(request: Request, configured: str | None) -> str:
    """
    Reconstruct the URL Twilio signed. Behind a proxy ``request.url`` is
    the internal URL, so prefer the configured public one.
    """
    query = request.url.query
    if configured:
        base = configured
    else:
        proto = request.headers.get("X-Forwarded-Proto", "https")
        host = request.headers.get("X-Forwarded-Host") or request.headers.get("Host", "")
        base = f"{proto}://{host}{request.url.path}"
    return f"{base}?{query}" if query else base


async def validated_form(request: Request, *, configured_url: str | None) -> dict[str, str]:
    """Read the form body, checking the Twilio signature when validation is required."""
    form = {key: str(value) for key, value in (await request.form()).items()}

    if not settings.require_webhook_validation:
        return form

    if not settings.twilio_auth_token:
        logger.error("TWILIO_AUTH_TOKEN not configured")
        AppMetrics.webhook_validation_failed("twilio")
        raise HTTPException(status_code=500, detail="Webhook validation not configured")

    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature:
        logger.warning("Missing X-Twilio-Signature header")
        AppMetrics.webhook_validation_failed("twilio")
        raise HTTPException(status_code=403, detail="Missing signature")

    url = _public_url(request, configured_url)
    if not RequestValidator(settings.twilio_auth_token).validate(url, form, signature):
        logger.error("Invalid Twilio signature", extra={"url": url})
        AppMetrics.webhook_validation_failed("twilio")
        raise HTTPException(status_code=403, detail="Invalid signature")

    return form


async def inbound_sms_handler(request: Request, queue: JobQueue) -> PlainTextResponse:
    """Enqueue a candidate's reply for classification. Always answers with empty TwiML."""
    form = await validated_form(request, configured_url=settings.twilio_webhook_url)

    sender = form.get("From", "")
    message_sid = form.get("MessageSid") or form.get("SmsSid")
    ctx = LogContext(logger, request_id=getattr(request.state, "request_id", None))

    if not sender or not message_sid:
        ctx.warning("Inbound SMS without From/MessageSid ignored")
        return PlainTextResponse(content=EMPTY_TWIML, media_type="application/xml")

    await queue.enqueue(
        JOB_CONTACT_ATTEMPT_RESPONSE,
        {"from": sender, "body": form.get("Body", ""), "message_sid": message_sid},
        dedupe_key=f"reply:{message_sid}",
    )
    inc_counter("inbound_sms_total")
    ctx.info(f"Inbound SMS from {mask_phone(sender)} queued ({message_sid})")
    return PlainTextResponse(content=EMPTY_TWIML, media_type="application/xml")


async def delivery_status_handler(request: Request, call_cards: CallCardService) -> Response:
    """Fold a message status callback (``?member_id=``, optional ``&kind=message``) into the log."""
    form = await validated_form(request, configured_url=settings.twilio_status_url)

    member_id = request.query_params.get("member_id")
    kind = request.query_params.get("kind", STATUS_KIND_CALL_CARD)
    message_sid = form.get("MessageSid", "")
    message_status = form.get("MessageStatus", "")
    if not member_id or not message_sid:
        return Response(status_code=204)

    try:
        outcome = await call_cards.record_delivery_status(member_id, message_sid, message_status, kind)
    except NotFoundError as exc:
        # Member deleted since the send; nothing to update
        logger.info(f"Delivery status ignored: {exc.detail}")
        return Response(status_code=204)

    if outcome.recorded:
        LogContext(logger, request_id=getattr(request.state, "request_id", None)).info(
            f"Delivery status {message_status} for member {member_id}"
        )
    return Response(status_code=204)
