# roster/services.py
"""
Process-wide composition of the crewing and call-sheet services.

Repositories, senders and the delivery pipeline are built once from
settings; the HTTP app and the job worker share the same instances.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from roster.config import settings
from roster.core.crewing.contact_attempt import ContactAttemptService
from roster.core.crewing.jobs import CrewingJobHandlers
from roster.core.crewing.queue_advancer import PositionQueueAdvancer
from roster.core.notifications.call_cards import CallCardService
from roster.core.notifications.delivery import BatchedDeliveryPipeline
from roster.core.notifications.first_contact import FirstContactDetector
from roster.core.notifications.jobs import NotificationJobHandlers
from roster.core.notifications.payloads import DeliveryConfig
from roster.core.notifications.push import PushResetCoordinator
from roster.infra.email_sender import SmtpEmailSender
from roster.infra.error_tracking import SlackAlerter, get_error_tracker
from roster.infra.job_worker import JobWorker
from roster.infra.pg_call_sheet_repo_async import get_call_sheet_repo
from roster.infra.pg_crewing_repo_async import get_crewing_repo
from roster.infra.pg_job_repo_async import get_job_repo
from roster.infra.pg_notification_repo_async import get_notification_log
from roster.infra.sms_sender import TwilioSmsSender


@dataclass
class Services:
    attempts: ContactAttemptService
    advancer: PositionQueueAdvancer
    call_cards: CallCardService
    push: PushResetCoordinator
    pipeline: BatchedDeliveryPipeline

    def register_jobs(self, worker: JobWorker) -> None:
        CrewingJobHandlers(self.attempts, self.advancer).register(
            worker, throttle_seconds=settings.crewing_throttle_seconds,
        )
        NotificationJobHandlers(self.call_cards, self.push).register(worker)


def build_services() -> Services:
    tracker = get_error_tracker()
    alert = SlackAlerter(settings.slack_webhook_url)
    queue = get_job_repo()
    crewing = get_crewing_repo()
    call_sheets = get_call_sheet_repo()
    log = get_notification_log()

    pipeline = BatchedDeliveryPipeline(
        sms=TwilioSmsSender(),
        email=SmtpEmailSender(),
        log=log,
        config=DeliveryConfig.from_settings(settings),
        tracker=tracker,
        members=call_sheets,
        first_contact=FirstContactDetector(log, settings.vcard_url),
    )

    return Services(
        attempts=ContactAttemptService(
            crewing,
            log,
            pipeline,
            queue,
            site_url=settings.public_site_url,
            response_window=timedelta(hours=settings.crewing_response_window_hours),
            tracker=tracker,
            alert=alert,
        ),
        advancer=PositionQueueAdvancer(crewing, queue),
        call_cards=CallCardService(
            call_sheets,
            log,
            pipeline,
            site_url=settings.public_site_url,
            status_callback_url=settings.twilio_status_url,
            alert=alert,
        ),
        push=PushResetCoordinator(
            call_sheets,
            pipeline,
            queue,
            site_url=settings.public_site_url,
            status_callback_url=settings.twilio_status_url,
        ),
        pipeline=pipeline,
    )


_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def reset_services() -> None:
    """Drop the singleton (tests)."""
    global _services
    _services = None
