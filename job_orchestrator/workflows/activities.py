"""Activities invoked by the lifecycle controller.

Each method is one small operation with side effects on the job record,
the worker pool, the escrow ledger or the outside world (notifications).
Activities raise on failure; the controller decides whether to retry.
"""

import logging
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Protocol

from ..clock import Clock, SystemClock
from ..config import OrchestratorConfig
from ..errors import NotFoundError, PricingError
from ..escrow.manager import SYSTEM_ACTOR, EscrowManager
from ..models.execution import JobState
from ..models.transaction import TransactionRecord, TransactionStatus
from ..money import quantize_money
from ..repositories import JobRepository
from .matching import MatchAttempt, WorkerMatcher, WorkerPool

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Outbound notification channel (email, push)."""

    def notify(self, recipient_id: str, event: str, data: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes notifications to the log instead of delivering them."""

    def notify(self, recipient_id: str, event: str, data: dict[str, Any]) -> None:
        logger.info("Notify %s: %s %s", recipient_id, event, data)


class JobActivities:
    """The activity set for one orchestrator instance."""

    def __init__(
        self,
        config: OrchestratorConfig,
        jobs: JobRepository,
        workers: WorkerPool,
        escrow: EscrowManager,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.jobs = jobs
        self.workers = workers
        self.escrow = escrow
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or SystemClock()
        self.matcher = WorkerMatcher(workers, config.matching)

    # -------------------------------------------------------------------
    # Pricing and offer
    # -------------------------------------------------------------------

    def price_job(self, job_id: str) -> Decimal:
        """Base hourly rate x estimated hours x urgency multiplier."""
        try:
            job = self.jobs.get(job_id)
        except NotFoundError as e:
            raise PricingError(f"Cannot price job {job_id}: {e}") from e

        if job.estimated_duration_hours <= 0:
            raise PricingError(f"Job {job_id} has no estimated duration")

        pricing = self.config.pricing
        amount = quantize_money(
            pricing.base_hourly_rate
            * job.estimated_duration_hours
            * pricing.multiplier_for(job.urgency.value)
        )
        self.jobs.update(job_id, total_pay=amount)
        logger.info("Priced job %s at $%s", job_id, amount)
        return amount

    def send_job_offer(self, job_id: str, amount: Decimal) -> None:
        job = self.jobs.get(job_id)
        self.notifier.notify(job.consumer_id, "job_offer", {
            "job_id": job_id,
            "title": job.title,
            "amount": str(amount),
            "respond_within_hours": self.config.timeouts.offer_decision.total_seconds() / 3600,
        })

    # -------------------------------------------------------------------
    # Matching and scheduling
    # -------------------------------------------------------------------

    def find_matching_worker(self, job_id: str, attempt_number: int) -> MatchAttempt:
        job = self.jobs.get(job_id)
        result = self.matcher.attempt(job, attempt_number)
        if result.matched:
            self.jobs.update(job_id, worker_id=result.worker_id)
        return result

    def schedule_job(self, job_id: str, worker_id: str) -> datetime:
        """Book the job for 09:00 UTC the next day."""
        job = self.jobs.get(job_id)
        tomorrow = (self.clock.now() + timedelta(days=1)).date()
        start = datetime.combine(tomorrow, time(9, 0), tzinfo=timezone.utc)
        end = start + timedelta(hours=float(job.estimated_duration_hours))
        self.jobs.update(job_id, worker_id=worker_id, scheduled_start=start, scheduled_end=end)
        self.notifier.notify(worker_id, "job_scheduled", {"job_id": job_id, "start": start.isoformat()})
        self.notifier.notify(job.consumer_id, "job_scheduled", {"job_id": job_id, "start": start.isoformat()})
        logger.info("Scheduled job %s with worker %s at %s", job_id, worker_id, start.isoformat())
        return start

    def release_worker(self, job_id: str, worker_id: str) -> None:
        if self.workers.release(worker_id, job_id):
            logger.info("Released worker %s from job %s", worker_id, job_id)

    # -------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------

    def authorize_job_payment(self, job_id: str, amount: Decimal, idempotency_key: str) -> str:
        job = self.jobs.get(job_id)
        record = self.escrow.authorize(
            job_id, amount, job.payment_source, actor_id=job.consumer_id, idempotency_key=idempotency_key,
        )
        return record.id

    def capture_job_payment(self, transaction_id: str, amount: Optional[Decimal] = None) -> TransactionRecord:
        return self.escrow.capture(transaction_id, amount, actor_id=SYSTEM_ACTOR)

    def refund_job_payment(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: str = "",
    ) -> Optional[str]:
        """Refund captured money or release a held authorization.

        Returns the refund transaction id, or None when nothing is held.
        """
        original = self.escrow.ledger.get(transaction_id)
        if original.status not in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED):
            return None
        return self.escrow.refund(transaction_id, amount, reason, actor_id=SYSTEM_ACTOR).id

    def update_job_payment_status(self, job_id: str, transaction_id: str) -> None:
        self.jobs.set_status(job_id, JobState.PAID)
        logger.info("Job %s paid via %s", job_id, transaction_id)

    # -------------------------------------------------------------------
    # Reviews and closure
    # -------------------------------------------------------------------

    def request_reviews(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        deadline_days = self.config.timeouts.review_window.days
        for recipient in (job.consumer_id, job.worker_id):
            if recipient:
                self.notifier.notify(recipient, "review_requested", {"job_id": job_id, "within_days": deadline_days})

    def close_job(self, job_id: str) -> None:
        job = self.jobs.set_status(job_id, JobState.CLOSED)
        self.notifier.notify(job.consumer_id, "job_closed", {"job_id": job_id})

    # -------------------------------------------------------------------
    # Terminal handlers
    # -------------------------------------------------------------------

    def handle_job_rejection(self, job_id: str) -> None:
        job = self.jobs.set_status(job_id, JobState.REJECTED)
        self.notifier.notify(job.consumer_id, "offer_rejected", {"job_id": job_id})

    def handle_no_worker_available(self, job_id: str) -> None:
        job = self.jobs.set_status(job_id, JobState.NO_WORKER_AVAILABLE)
        self.notifier.notify(job.consumer_id, "no_worker_available", {"job_id": job_id})

    def handle_payment_failure(self, job_id: str) -> None:
        job = self.jobs.set_status(job_id, JobState.PAYMENT_FAILED)
        self.notifier.notify(job.consumer_id, "payment_failed", {"job_id": job_id})
        if job.worker_id:
            self.notifier.notify(job.worker_id, "payment_delayed", {"job_id": job_id})

    def handle_job_cancellation(self, job_id: str, reason: str) -> None:
        job = self.jobs.set_status(job_id, JobState.CANCELLED)
        for recipient in (job.consumer_id, job.worker_id):
            if recipient:
                self.notifier.notify(recipient, "job_cancelled", {"job_id": job_id, "reason": reason})

    def handle_execution_failure(self, job_id: str, reason: str) -> None:
        job = self.jobs.set_status(job_id, JobState.FAILED)
        self.notifier.notify(job.consumer_id, "job_failed", {"job_id": job_id, "reason": reason})

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------

    def record_job_status(self, job_id: str, state: JobState) -> None:
        """Mirror the execution's lifecycle state onto the job record."""
        self.jobs.set_status(job_id, state)
