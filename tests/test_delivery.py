# tests/test_delivery.py
"""
Tests for the batched delivery pipeline:
- per-recipient failure isolation
- chunking and inter-batch delay
- email batch semantics
- post-send bookkeeping (log + member status)
- first-contact card
"""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from roster.core.notifications.delivery import BatchedDeliveryPipeline, chunked
from roster.core.notifications.domain import CallSheetMember, MemberStatus
from roster.core.notifications.first_contact import FirstContactDetector
from roster.core.notifications.payloads import (
    Channel,
    DeliveryConfig,
    DeliverySummary,
    EmailPayload,
    NotificationType,
    RecipientRef,
    SmsPayload,
)
from roster.infra.metrics import get_metrics_collector

from tests.conftest import NOW, VCARD_URL


def _sms(n: int, **kwargs) -> SmsPayload:
    return SmsPayload(to=f"+1555100{n:04d}", body=f"message {n}", idempotency_key=f"t:{n}:sms", **kwargs)


def _email(n: int, **kwargs) -> EmailPayload:
    return EmailPayload(
        to=f"crew{n}@example.com", subject="Call time", body=f"message {n}",
        idempotency_key=f"t:{n}:email", **kwargs,
    )


def _pipeline(sms_sender, email_sender, notification_log, tracker, sleeper, *, members=None, **config):
    return BatchedDeliveryPipeline(
        sms_sender,
        email_sender,
        notification_log,
        DeliveryConfig(**config),
        tracker=tracker,
        members=members,
        first_contact=FirstContactDetector(notification_log, VCARD_URL),
        sleep=sleeper,
        clock=lambda: NOW,
    )


class TestChunked:
    def test_chunks(self):
        assert [list(c) for c in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]

    def test_empty(self):
        assert list(chunked([], 3)) == []


class TestDeliveryConfig:
    def test_defaults(self):
        config = DeliveryConfig()
        assert (config.sms_batch_size, config.email_batch_size, config.inter_batch_delay) == (50, 100, 1.0)

    @pytest.mark.parametrize("kwargs", [
        {"sms_batch_size": 0},
        {"email_batch_size": 0},
        {"inter_batch_delay": -1},
    ])
    def test_rejects_invalid(self, kwargs):
        with pytest.raises(ValueError):
            DeliveryConfig(**kwargs)

    def test_from_settings_clamps(self):
        s = SimpleNamespace(sms_batch_size=0, email_batch_size=25, inter_batch_delay_seconds=-3)
        config = DeliveryConfig.from_settings(s)
        assert (config.sms_batch_size, config.email_batch_size, config.inter_batch_delay) == (1, 25, 0.0)

    def test_batch_size_per_channel(self):
        config = DeliveryConfig(sms_batch_size=7, email_batch_size=40)
        assert config.batch_size(Channel.SMS) == 7
        assert config.batch_size(Channel.EMAIL) == 40


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, pipeline, sms_sender, notification_log, tracker):
        payloads = [_sms(n) for n in range(1, 6)]
        sms_sender.failing.add(payloads[2].to)

        summary = await pipeline.deliver(payloads)

        assert summary.sms.attempted == 5
        assert summary.sms.succeeded == 4
        assert summary.sms.failed == 1
        assert summary.report() == "sent to 4 of 5"
        assert sorted(s["to"] for s in sms_sender.sent) == sorted(p.to for i, p in enumerate(payloads) if i != 2)
        assert len(notification_log.records) == 4
        assert len(tracker.captured) == 1
        assert tracker.captured[0][1]["stage"] == "send"

    @pytest.mark.asyncio
    async def test_never_raises_when_everything_fails(self, pipeline, sms_sender):
        payloads = [_sms(n) for n in range(3)]
        sms_sender.failing.update(p.to for p in payloads)

        summary = await pipeline.deliver(payloads)

        assert summary.succeeded == 0
        assert summary.failed == 3
        assert all(not r.ok and r.error for r in summary.results)

    @pytest.mark.asyncio
    async def test_failures_counted_in_metrics(self, pipeline, sms_sender):
        payloads = [_sms(1), _sms(2)]
        sms_sender.failing.add(payloads[0].to)

        await pipeline.deliver(payloads)

        collector = get_metrics_collector()
        assert collector.get_counter("deliveries_total", channel="sms", status="sent") == 1
        assert collector.get_counter("deliveries_total", channel="sms", status="failed") == 1

    @pytest.mark.asyncio
    async def test_rejects_unknown_payload(self, pipeline):
        with pytest.raises(TypeError):
            await pipeline.deliver([{"to": "+15550000000", "body": "hi"}])

    @pytest.mark.asyncio
    async def test_empty_delivery(self, pipeline, sleeper):
        summary = await pipeline.deliver([])
        assert summary.attempted == 0
        assert summary.report() == "sent to 0 of 0"
        assert sleeper.calls == []


class TestBatching:
    @pytest.mark.asyncio
    async def test_sms_chunks_with_delay_between(
        self, sms_sender, email_sender, notification_log, tracker, sleeper,
    ):
        pipeline = _pipeline(
            sms_sender, email_sender, notification_log, tracker, sleeper,
            sms_batch_size=2, inter_batch_delay=0.5,
        )

        summary = await pipeline.deliver([_sms(n) for n in range(5)])

        assert summary.sms.succeeded == 5
        # 3 chunks -> 2 pauses, none before the first chunk
        assert sleeper.calls == [0.5, 0.5]
        assert sms_sender.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_sms_within_chunk_sent_concurrently(self, pipeline, sms_sender):
        await pipeline.deliver([_sms(n) for n in range(4)])
        assert sms_sender.max_in_flight == 4

    @pytest.mark.asyncio
    async def test_email_chunks_use_send_batch(
        self, sms_sender, email_sender, notification_log, tracker, sleeper,
    ):
        pipeline = _pipeline(
            sms_sender, email_sender, notification_log, tracker, sleeper,
            email_batch_size=3, inter_batch_delay=2.0,
        )

        summary = await pipeline.deliver([_email(n) for n in range(7)])

        assert [len(b) for b in email_sender.batches] == [3, 3, 1]
        assert sleeper.calls == [2.0, 2.0]
        assert summary.email.succeeded == 7

    @pytest.mark.asyncio
    async def test_email_item_rejection(self, pipeline, email_sender, tracker):
        payloads = [_email(1), _email(2)]
        email_sender.failing.add("crew2@example.com")

        summary = await pipeline.deliver(payloads)

        assert summary.email.succeeded == 1
        assert summary.email.failed == 1
        assert len(tracker.captured) == 1

    @pytest.mark.asyncio
    async def test_email_batch_error_fails_only_that_chunk(
        self, sms_sender, email_sender, notification_log, tracker, sleeper,
    ):
        pipeline = _pipeline(
            sms_sender, email_sender, notification_log, tracker, sleeper, email_batch_size=2,
        )
        email_sender.raise_on_batch = 1

        summary = await pipeline.deliver([_email(n) for n in range(4)])

        assert summary.email.failed == 2
        assert summary.email.succeeded == 2
        assert len(tracker.captured) == 2

    @pytest.mark.asyncio
    async def test_mixed_channels(self, pipeline):
        summary = await pipeline.deliver([_sms(1), _email(1), _sms(2)])

        assert summary.sms.attempted == 2
        assert summary.email.attempted == 1
        assert summary.as_dict()["report"] == "sent to 3 of 3"


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_success_is_logged(self, pipeline, notification_log):
        ref = RecipientRef(company_id="co-1", call_sheet_id="cs-1", member_id="m1")
        await pipeline.deliver([_sms(1, ref=ref, record_type=NotificationType.CALL_CARD_SENT)])

        record = notification_log.records[0]
        assert record.type == NotificationType.CALL_CARD_SENT
        assert record.call_sheet_id == "cs-1"
        assert record.member_id == "m1"
        assert record.external_id == "SM0001"
        assert record.idempotency_key == "t:1:sms"

    @pytest.mark.asyncio
    async def test_marks_member_status(self, pipeline, call_sheet_repo):
        call_sheet_repo.add_member(CallSheetMember(
            id="m1", call_sheet_id="cs-1", name="Sam", status=MemberStatus.PENDING, short_id="a",
        ))
        ref = RecipientRef(call_sheet_id="cs-1", member_id="m1")

        await pipeline.deliver([_sms(1, ref=ref, mark_status=MemberStatus.SENT_CALL_CARD.value)])

        assert call_sheet_repo.members["m1"].status == MemberStatus.SENT_CALL_CARD
        assert call_sheet_repo.members["m1"].sent_at == NOW

    @pytest.mark.asyncio
    async def test_failed_send_does_not_mark_member(self, pipeline, call_sheet_repo, sms_sender):
        call_sheet_repo.add_member(CallSheetMember(
            id="m1", call_sheet_id="cs-1", name="Sam", status=MemberStatus.PENDING, short_id="a",
        ))
        payload = _sms(1, ref=RecipientRef(member_id="m1"), mark_status=MemberStatus.SENT_CALL_CARD.value)
        sms_sender.failing.add(payload.to)

        await pipeline.deliver([payload])

        assert call_sheet_repo.members["m1"].status == MemberStatus.PENDING

    @pytest.mark.asyncio
    async def test_redelivered_key_logged_once(self, pipeline, notification_log):
        await pipeline.deliver([_sms(1)])
        await pipeline.deliver([_sms(1)])

        assert len(notification_log.records) == 1

    @pytest.mark.asyncio
    async def test_bookkeeping_failure_still_counts_as_sent(self, pipeline, notification_log, tracker):
        notification_log.fail_appends = True

        summary = await pipeline.deliver([_sms(1)])

        assert summary.sms.succeeded == 1
        assert tracker.captured[0][1]["stage"] == "record"


class TestFirstContact:
    @pytest.mark.asyncio
    async def test_contact_card_attached_once(self, pipeline, sms_sender):
        ref = RecipientRef(call_sheet_id="cs-1", member_id="m1")
        await pipeline.deliver(
            [_sms(1, ref=ref, record_type=NotificationType.CALL_CARD_SENT)], first_contact=True,
        )
        await pipeline.deliver(
            [SmsPayload(to=_sms(1).to, body="again", record_type=NotificationType.CALL_CARD_SENT)],
            first_contact=True,
        )

        assert sms_sender.sent[0]["media_urls"] == [VCARD_URL]
        assert sms_sender.sent[1]["media_urls"] == []

    @pytest.mark.asyncio
    async def test_not_attached_without_first_contact_flag(self, pipeline, sms_sender):
        await pipeline.deliver([_sms(1)])
        assert sms_sender.sent[0]["media_urls"] == []

    @pytest.mark.asyncio
    async def test_plain_messages_do_not_count_as_contact(self, pipeline, sms_sender):
        await pipeline.deliver([_sms(1)])
        await pipeline.deliver([_sms(2, record_type=NotificationType.CALL_CARD_SENT)], first_contact=True)
        await pipeline.deliver(
            [SmsPayload(to=_sms(1).to, body="card", record_type=NotificationType.CALL_CARD_SENT)],
            first_contact=True,
        )

        assert sms_sender.sent[2]["media_urls"] == [VCARD_URL]


class TestSummary:
    def test_empty_summary(self):
        summary = DeliverySummary()
        assert summary.as_dict() == {
            "sms": {"attempted": 0, "succeeded": 0, "failed": 0},
            "email": {"attempted": 0, "succeeded": 0, "failed": 0},
            "attempted": 0,
            "succeeded": 0,
            "failed": 0,
            "report": "sent to 0 of 0",
        }
