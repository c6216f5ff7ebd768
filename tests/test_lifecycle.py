"""End-to-end tests for the job lifecycle controller and orchestrator."""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import CONSUMER, drive_to_review

from job_orchestrator.config import OrchestratorConfig
from job_orchestrator.errors import GatewayUnavailableError, InvalidTransitionError, NotFoundError
from job_orchestrator.models.execution import JobState, WaitKind, is_valid_path
from job_orchestrator.models.job import JobUrgency
from job_orchestrator.models.transaction import EventStatus, TransactionStatus, TransactionType
from job_orchestrator.retry import RetryPolicy
from job_orchestrator.workflows import JobOrchestrator, RetryStatus


def _authorization(orchestrator, job_id):
    return orchestrator.escrow.latest_authorization(job_id)


# ── Happy path ────────────────────────────────────────────────────────────

class TestHappyPath:
    def test_start_prices_and_sends_offer(self, orchestrator, hundred_dollar_job, notifier):
        execution = orchestrator.start(hundred_dollar_job.id)

        assert execution.state == JobState.OFFER_SENT
        assert execution.priced_amount == Decimal("100.00")
        assert execution.pending_wait.kind == WaitKind.SIGNAL
        assert execution.pending_wait.names == ["offer-response"]
        assert orchestrator.jobs.get(hundred_dollar_job.id).total_pay == Decimal("100.00")
        assert len(notifier.events("job_offer")) == 1

    def test_urgency_multiplier_applies(self, orchestrator):
        job = orchestrator.submit_job(CONSUMER, "Burst pipe", 2, JobUrgency.URGENT, payment_source="tok_visa")
        execution = orchestrator.start(job.id)
        # 25 x 2 x 1.5
        assert execution.priced_amount == Decimal("75.00")

    def test_full_lifecycle_to_paid(self, orchestrator, hundred_dollar_job):
        execution = drive_to_review(orchestrator, hundred_dollar_job.id)

        assert JobState.PAID in execution.observed_states
        assert execution.state == JobState.REVIEW_PENDING
        assert is_valid_path(execution.observed_states)

        dana = [w for w in orchestrator.workers.list_workers() if w.name == "Dana"][0]
        assert execution.assigned_worker_id == dana.id

        auth = _authorization(orchestrator, hundred_dollar_job.id)
        assert auth.amount == Decimal("100.00")
        assert auth.capture_amount == Decimal("100.00")
        assert auth.escrow_released_at is not None

    def test_worker_released_after_capture(self, orchestrator, hundred_dollar_job):
        execution = drive_to_review(orchestrator, hundred_dollar_job.id)
        worker = orchestrator.workers.get(execution.assigned_worker_id)
        assert worker.is_available
        assert worker.reserved_for is None

    def test_partial_refund_after_payment(self, orchestrator, hundred_dollar_job):
        drive_to_review(orchestrator, hundred_dollar_job.id)
        auth = _authorization(orchestrator, hundred_dollar_job.id)

        refund = orchestrator.refund_payment(hundred_dollar_job.id, Decimal("40"), "partial refund")

        assert refund.transaction_type == TransactionType.REFUND
        assert refund.amount == Decimal("40.00")
        assert refund.parent_transaction_id == auth.id
        assert orchestrator.ledger.get(auth.id).status == TransactionStatus.REFUNDED
        assert orchestrator.jobs.get(hundred_dollar_job.id).status == JobState.CANCELLED

    def test_list_jobs_by_status(self, orchestrator, hundred_dollar_job):
        other = orchestrator.submit_job(CONSUMER, "Hang shelves", 1, payment_source="tok_visa")
        orchestrator.start(hundred_dollar_job.id)

        assert {j.id for j in orchestrator.jobs.list_jobs()} == {hundred_dollar_job.id, other.id}
        assert [j.id for j in orchestrator.jobs.list_jobs(JobState.DRAFT)] == [other.id]

    def test_schedule_recorded_on_job(self, orchestrator, hundred_dollar_job, clock):
        orchestrator.start(hundred_dollar_job.id)
        orchestrator.signal(hundred_dollar_job.id, "offer-response", {"accepted": True})

        job = orchestrator.jobs.get(hundred_dollar_job.id)
        assert job.status == JobState.SCHEDULED
        assert job.scheduled_start.date() == (clock.now() + timedelta(days=1)).date()
        assert job.scheduled_start.hour == 9
        assert job.scheduled_end - job.scheduled_start == timedelta(hours=4)


# ── Offer decision ────────────────────────────────────────────────────────

class TestOfferDecision:
    def test_explicit_rejection(self, orchestrator, hundred_dollar_job, notifier):
        orchestrator.start(hundred_dollar_job.id)
        execution = orchestrator.signal(hundred_dollar_job.id, "offer-response", {"accepted": False})

        assert execution.state == JobState.REJECTED
        assert execution.finalized
        assert len(notifier.events("offer_rejected")) == 1

    def test_timeout_is_rejection(self, orchestrator, hundred_dollar_job, clock, notifier):
        orchestrator.start(hundred_dollar_job.id)

        clock.advance(timedelta(hours=24))
        orchestrator.tick()

        execution = orchestrator.get_execution(hundred_dollar_job.id)
        assert execution.state == JobState.REJECTED
        assert orchestrator.jobs.get(hundred_dollar_job.id).status == JobState.REJECTED
        assert len(notifier.events("offer_rejected")) == 1

    def test_tick_before_deadline_keeps_waiting(self, orchestrator, hundred_dollar_job, clock):
        orchestrator.start(hundred_dollar_job.id)

        clock.advance(timedelta(hours=23, minutes=59))
        assert orchestrator.tick() == []
        assert orchestrator.get_execution(hundred_dollar_job.id).state == JobState.OFFER_SENT

    def test_duplicate_offer_response_ignored(self, orchestrator, hundred_dollar_job):
        orchestrator.start(hundred_dollar_job.id)
        orchestrator.signal(hundred_dollar_job.id, "offer-response", {"accepted": True})
        execution = orchestrator.signal(hundred_dollar_job.id, "offer-response", {"accepted": False})

        assert execution.state == JobState.SCHEDULED
        assert len([d for d in execution.inbox if d.name == "offer-response"]) == 1


# ── Matching ──────────────────────────────────────────────────────────────

class TestMatchingLoop:
    def _accepted_job(self, orchestrator):
        job = orchestrator.submit_job(CONSUMER, "Paint fence", 4, JobUrgency.LOW, payment_source="tok_visa")
        orchestrator.start(job.id)
        orchestrator.signal(job.id, "offer-response", {"accepted": True})
        return job

    def test_backoff_when_no_worker(self, orchestrator):
        job = self._accepted_job(orchestrator)
        execution = orchestrator.get_execution(job.id)

        assert execution.state == JobState.ACCEPTED
        assert execution.matching_attempts == 1
        assert execution.pending_wait.kind == WaitKind.TIMER

    def test_worker_found_on_retry(self, orchestrator, clock):
        job = self._accepted_job(orchestrator)
        orchestrator.add_worker("Late", 4.0)

        clock.advance(timedelta(minutes=4))
        orchestrator.tick()
        assert orchestrator.get_execution(job.id).matching_attempts == 1

        clock.advance(timedelta(minutes=1))
        orchestrator.tick()
        execution = orchestrator.get_execution(job.id)
        assert execution.matching_attempts == 2
        assert execution.state == JobState.SCHEDULED

    def test_exhaustion_after_five_attempts(self, orchestrator, clock, notifier):
        job = self._accepted_job(orchestrator)

        # Attempt n waits n x 5 minutes; nothing follows the fifth
        for minutes in (5, 10, 15, 20):
            clock.advance(timedelta(minutes=minutes))
            orchestrator.tick()

        execution = orchestrator.get_execution(job.id)
        assert execution.state == JobState.NO_WORKER_AVAILABLE
        assert execution.matching_attempts == 5
        assert execution.pending_wait is None
        assert len(notifier.events("no_worker_available")) == 1


# ── Reviews ───────────────────────────────────────────────────────────────

class TestReviewLoop:
    def test_two_reviews_close_job(self, orchestrator, hundred_dollar_job):
        job_id = hundred_dollar_job.id
        execution = drive_to_review(orchestrator, job_id)
        worker_id = execution.assigned_worker_id

        orchestrator.signal(job_id, "review-submitted", {"reviewer_id": CONSUMER, "rating": 5})
        execution = orchestrator.signal(job_id, "review-submitted", {"reviewer_id": worker_id, "rating": 4})

        assert execution.state == JobState.CLOSED
        assert execution.reviews_received == 2
        assert orchestrator.jobs.get(job_id).status == JobState.CLOSED

    def test_no_reviews_close_at_deadline(self, orchestrator, hundred_dollar_job, clock):
        job_id = hundred_dollar_job.id
        drive_to_review(orchestrator, job_id)

        clock.advance(timedelta(days=7))
        orchestrator.tick()

        execution = orchestrator.get_execution(job_id)
        assert execution.state == JobState.CLOSED
        assert execution.reviews_received == 0

    def test_deadline_is_fixed_across_reviews(self, orchestrator, hundred_dollar_job, clock):
        job_id = hundred_dollar_job.id
        execution = drive_to_review(orchestrator, job_id)
        deadline = execution.review_deadline

        clock.advance(timedelta(days=3))
        execution = orchestrator.signal(job_id, "review-submitted", {"reviewer_id": CONSUMER, "rating": 5})
        assert execution.pending_wait.deadline == deadline

        clock.advance(timedelta(days=4))
        orchestrator.tick()
        execution = orchestrator.get_execution(job_id)
        assert execution.state == JobState.CLOSED
        assert execution.reviews_received == 1

    def test_same_reviewer_counted_once(self, orchestrator, hundred_dollar_job):
        job_id = hundred_dollar_job.id
        drive_to_review(orchestrator, job_id)

        orchestrator.signal(job_id, "review-submitted", {"reviewer_id": CONSUMER, "rating": 5})
        execution = orchestrator.signal(job_id, "review-submitted", {"reviewer_id": CONSUMER, "rating": 1})

        assert execution.state == JobState.REVIEW_PENDING
        assert execution.reviews_received == 1

    def test_close_runs_once(self, orchestrator, hundred_dollar_job, notifier):
        job_id = hundred_dollar_job.id
        execution = drive_to_review(orchestrator, job_id)
        orchestrator.signal(job_id, "review-submitted", {"reviewer_id": CONSUMER, "rating": 5})
        orchestrator.signal(job_id, "review-submitted", {"reviewer_id": execution.assigned_worker_id, "rating": 5})

        assert len(notifier.events("job_closed")) == 1


# ── Signals ───────────────────────────────────────────────────────────────

class TestSignals:
    def test_signal_buffered_before_wait(self, orchestrator, hundred_dollar_job):
        job_id = hundred_dollar_job.id
        orchestrator.start(job_id)
        orchestrator.signal(job_id, "job-started")

        execution = orchestrator.signal(job_id, "offer-response", {"accepted": True})
        assert execution.state == JobState.IN_PROGRESS

    def test_unknown_signal(self, orchestrator, hundred_dollar_job):
        orchestrator.start(hundred_dollar_job.id)
        with pytest.raises(NotFoundError):
            orchestrator.signal(hundred_dollar_job.id, "teleport")

    def test_signal_to_finished_execution(self, orchestrator, hundred_dollar_job):
        orchestrator.start(hundred_dollar_job.id)
        orchestrator.signal(hundred_dollar_job.id, "offer-response", {"accepted": False})
        with pytest.raises(InvalidTransitionError):
            orchestrator.signal(hundred_dollar_job.id, "job-started")

    def test_signal_without_execution(self, orchestrator, hundred_dollar_job):
        with pytest.raises(NotFoundError):
            orchestrator.signal(hundred_dollar_job.id, "job-started")

    def test_start_twice_rejected(self, orchestrator, hundred_dollar_job):
        orchestrator.start(hundred_dollar_job.id)
        with pytest.raises(InvalidTransitionError):
            orchestrator.start(hundred_dollar_job.id)


# ── Cancellation ──────────────────────────────────────────────────────────

class TestCancellation:
    def test_cancel_while_waiting_for_offer(self, orchestrator, hundred_dollar_job, notifier):
        orchestrator.start(hundred_dollar_job.id)
        execution = orchestrator.cancel(hundred_dollar_job.id, "customer changed mind")

        assert execution.state == JobState.CANCELLED
        assert execution.cancel_reason == "customer changed mind"
        assert orchestrator.escrow.transactions_for_job(hundred_dollar_job.id) == []
        assert len(notifier.events("job_cancelled")) == 1

    def test_cancel_after_capture_refunds(self, orchestrator, hundred_dollar_job):
        job_id = hundred_dollar_job.id
        drive_to_review(orchestrator, job_id)
        auth = _authorization(orchestrator, job_id)

        execution = orchestrator.cancel(job_id, "dispute")

        assert execution.state == JobState.CANCELLED
        refund = orchestrator.ledger.get(execution.refund_id)
        assert refund.parent_transaction_id == auth.id
        assert refund.amount == Decimal("100.00")
        assert orchestrator.ledger.get(auth.id).status == TransactionStatus.REFUNDED
        assert orchestrator.escrow.payment_summary(job_id).escrow_status == "refunded"

    def test_redelivered_cancel_is_ignored(self, orchestrator, hundred_dollar_job, notifier):
        job_id = hundred_dollar_job.id
        drive_to_review(orchestrator, job_id)

        first = orchestrator.cancel(job_id, "dispute", delivery_id="ticket-42")
        transactions = len(orchestrator.escrow.transactions_for_job(job_id))
        notices = len(notifier.events("job_cancelled"))

        again = orchestrator.cancel(job_id, "dispute", delivery_id="ticket-42")

        assert again.state == JobState.CANCELLED
        assert again.refund_id == first.refund_id
        assert len(orchestrator.escrow.transactions_for_job(job_id)) == transactions
        assert len(notifier.events("job_cancelled")) == notices

    def test_second_distinct_cancel_rejected(self, orchestrator, hundred_dollar_job):
        orchestrator.start(hundred_dollar_job.id)
        orchestrator.cancel(hundred_dollar_job.id, delivery_id="ticket-1")

        with pytest.raises(InvalidTransitionError):
            orchestrator.cancel(hundred_dollar_job.id, delivery_id="ticket-2")

    def test_cancel_releases_reserved_worker(self, orchestrator, hundred_dollar_job):
        job_id = hundred_dollar_job.id
        orchestrator.start(job_id)
        execution = orchestrator.signal(job_id, "offer-response", {"accepted": True})
        worker_id = execution.assigned_worker_id
        assert not orchestrator.workers.get(worker_id).is_available

        orchestrator.cancel(job_id)

        assert orchestrator.workers.get(worker_id).is_available

    def test_cancel_preempts_matching_backoff(self, orchestrator):
        job = orchestrator.submit_job(CONSUMER, "Mow lawn", 1, payment_source="tok_visa")
        orchestrator.start(job.id)
        orchestrator.signal(job.id, "offer-response", {"accepted": True})

        execution = orchestrator.cancel(job.id)
        assert execution.state == JobState.CANCELLED
        assert is_valid_path(execution.observed_states)


# ── Payment failure ───────────────────────────────────────────────────────

class TestPaymentFailure:
    def _fail_capture(self, orchestrator, gateway, job_id, times=3):
        gateway.fail_next("capture", GatewayUnavailableError("gateway returned 500", status_code=500), times=times)
        orchestrator.start(job_id)
        orchestrator.signal(job_id, "offer-response", {"accepted": True})
        orchestrator.signal(job_id, "job-started")
        return orchestrator.signal(job_id, "job-completed")

    def test_capture_exhaustion_routes_to_payment_failed(self, orchestrator, gateway, hundred_dollar_job, notifier):
        execution = self._fail_capture(orchestrator, gateway, hundred_dollar_job.id)

        assert execution.state == JobState.PAYMENT_FAILED
        assert "CaptureJobPayment" in execution.failure_reason
        assert orchestrator.jobs.get(hundred_dollar_job.id).status == JobState.PAYMENT_FAILED
        assert len(notifier.events("payment_failed")) == 1

        auth = _authorization(orchestrator, hundred_dollar_job.id)
        assert not auth.is_captured
        failed = [
            e for e in orchestrator.escrow.events_for_transaction(auth.id)
            if e.event_type == "capture" and e.event_status == EventStatus.FAILED
        ]
        assert len(failed) == 3

    def test_manual_capture_after_failure(self, orchestrator, gateway, hundred_dollar_job):
        self._fail_capture(orchestrator, gateway, hundred_dollar_job.id)

        record = orchestrator.capture_payment(hundred_dollar_job.id)

        assert record.capture_amount == Decimal("100.00")
        assert orchestrator.jobs.get(hundred_dollar_job.id).status == JobState.PAID
        # The execution itself stays archived at payment_failed
        assert orchestrator.get_execution(hundred_dollar_job.id).state == JobState.PAYMENT_FAILED

    def test_declined_card(self, orchestrator):
        orchestrator.add_worker("Dana", 4.8)
        job = orchestrator.submit_job(CONSUMER, "Hang shelves", 2, payment_source="tok_declined")
        orchestrator.start(job.id)
        orchestrator.signal(job.id, "offer-response", {"accepted": True})
        orchestrator.signal(job.id, "job-started")
        execution = orchestrator.signal(job.id, "job-completed")

        assert execution.state == JobState.PAYMENT_FAILED
        assert execution.authorization_id is None
        records = orchestrator.escrow.transactions_for_job(job.id)
        assert [r.status for r in records] == [TransactionStatus.FAILED]

    def test_transient_capture_error_retried_on_timer(self, tmp_path, gateway, clock, notifier):
        config = OrchestratorConfig(
            data_dir=tmp_path / "timer",
            activity_retry=RetryPolicy(max_attempts=3, initial_interval=30.0),
        )
        orchestrator = JobOrchestrator(config, gateway=gateway, clock=clock, notifier=notifier)
        orchestrator.add_worker("Dana", 4.8)
        job = orchestrator.submit_job(CONSUMER, "Fix sink", 4, JobUrgency.LOW, payment_source="tok_visa")

        execution = self._fail_capture(orchestrator, gateway, job.id, times=1)
        assert execution.state == JobState.COMPLETED
        assert execution.pending_wait.key == "retry:CaptureJobPayment"
        assert execution.step_attempts == 1

        clock.advance(timedelta(seconds=30))
        orchestrator.tick()
        execution = orchestrator.get_execution(job.id)
        assert execution.state == JobState.REVIEW_PENDING
        assert execution.step_attempts == 0


# ── Out-of-band payment retry ─────────────────────────────────────────────

class TestPaymentRetry:
    def _payment_failed(self, orchestrator, gateway, job_id):
        gateway.fail_next("capture", GatewayUnavailableError("gateway returned 503", status_code=503), times=3)
        orchestrator.start(job_id)
        orchestrator.signal(job_id, "offer-response", {"accepted": True})
        orchestrator.signal(job_id, "job-started")
        orchestrator.signal(job_id, "job-completed")

    def test_retry_succeeds(self, orchestrator, gateway, hundred_dollar_job):
        self._payment_failed(orchestrator, gateway, hundred_dollar_job.id)
        gateway.fail_next("capture", GatewayUnavailableError("still down", status_code=503), times=2)

        record = orchestrator.retry_payment(hundred_dollar_job.id)

        assert record.status == RetryStatus.SUCCEEDED
        assert record.attempts == 3
        assert orchestrator.jobs.get(hundred_dollar_job.id).status == JobState.PAID

    def test_retry_exhausts(self, orchestrator, gateway, hundred_dollar_job, notifier):
        self._payment_failed(orchestrator, gateway, hundred_dollar_job.id)
        gateway.fail_next("capture", GatewayUnavailableError("still down", status_code=503), times=5)

        record = orchestrator.retry_payment(hundred_dollar_job.id)

        assert record.status == RetryStatus.EXHAUSTED
        assert record.attempts == 5
        assert len(notifier.events("payment_failed")) == 2

    def test_retry_waits_for_backoff(self, orchestrator, gateway, hundred_dollar_job, clock):
        self._payment_failed(orchestrator, gateway, hundred_dollar_job.id)
        orchestrator.payment_retries.policy = RetryPolicy(max_attempts=5, initial_interval=60.0)
        gateway.fail_next("capture", GatewayUnavailableError("still down", status_code=503), times=1)

        record = orchestrator.retry_payment(hundred_dollar_job.id)
        assert record.status == RetryStatus.RUNNING
        assert record.next_attempt_at == clock.now() + timedelta(seconds=60)

        clock.advance(timedelta(seconds=60))
        orchestrator.tick()
        assert orchestrator.payment_retries.get(hundred_dollar_job.id).status == RetryStatus.SUCCEEDED

    def test_records_listed_for_tick(self, orchestrator, gateway, hundred_dollar_job):
        self._payment_failed(orchestrator, gateway, hundred_dollar_job.id)
        orchestrator.payment_retries.policy = RetryPolicy(max_attempts=5, initial_interval=60.0)
        gateway.fail_next("capture", GatewayUnavailableError("still down", status_code=503), times=1)
        orchestrator.retry_payment(hundred_dollar_job.id)

        records = orchestrator.payment_retries.list_records()

        assert [r.job_id for r in records] == [hundred_dollar_job.id]
        assert records[0].status == RetryStatus.RUNNING
        assert orchestrator.payment_retries.tick() == []

    def test_retry_requires_payment_failed(self, orchestrator, hundred_dollar_job):
        drive_to_review(orchestrator, hundred_dollar_job.id)
        with pytest.raises(InvalidTransitionError):
            orchestrator.retry_payment(hundred_dollar_job.id)


# ── Fatal errors ──────────────────────────────────────────────────────────

class TestFatalErrors:
    def test_pricing_failure_fails_execution(self, orchestrator, notifier):
        job = orchestrator.submit_job(CONSUMER, "Nothing", 0, payment_source="tok_visa")
        execution = orchestrator.start(job.id)

        assert execution.state == JobState.FAILED
        assert "estimated duration" in execution.failure_reason
        assert execution.observed_states == [JobState.DRAFT, JobState.FAILED]
        assert orchestrator.jobs.get(job.id).status == JobState.FAILED
        assert len(notifier.events("job_failed")) == 1


# ── Durability ────────────────────────────────────────────────────────────

class TestDurability:
    def test_checkpoint_written_while_suspended(self, orchestrator, hundred_dollar_job, config):
        orchestrator.start(hundred_dollar_job.id)
        assert (config.data_dir / "executions" / f"{hundred_dollar_job.id}.json").exists()

    def test_terminal_execution_archived(self, orchestrator, hundred_dollar_job, config):
        orchestrator.start(hundred_dollar_job.id)
        orchestrator.signal(hundred_dollar_job.id, "offer-response", {"accepted": False})

        assert not (config.data_dir / "executions" / f"{hundred_dollar_job.id}.json").exists()
        assert (config.data_dir / "executions" / "archive" / f"{hundred_dollar_job.id}.json").exists()

    def test_resume_in_new_process(self, orchestrator, hundred_dollar_job, config, gateway, clock, notifier):
        job_id = hundred_dollar_job.id
        orchestrator.start(job_id)
        orchestrator.signal(job_id, "offer-response", {"accepted": True})

        restarted = JobOrchestrator(config, gateway=gateway, clock=clock, notifier=notifier)
        restarted.signal(job_id, "job-started")
        execution = restarted.signal(job_id, "job-completed")

        assert execution.state == JobState.REVIEW_PENDING
        assert is_valid_path(execution.observed_states)

    def test_recover_fires_expired_deadlines(self, orchestrator, hundred_dollar_job, config, gateway, clock, notifier):
        orchestrator.start(hundred_dollar_job.id)
        clock.advance(timedelta(days=2))

        restarted = JobOrchestrator(config, gateway=gateway, clock=clock, notifier=notifier)
        items, resumed = restarted.recover()

        assert items == []
        assert [e.state for e in resumed] == [JobState.REJECTED]
