"""
Job lifecycle controller.

Drives one job's execution through pricing, offer, matching, scheduling,
work, payment, reviews and closure. The controller never blocks: when a
step needs a human decision or a backoff delay it registers a wait on the
execution checkpoint and returns. ``advance()`` is called again when a
signal arrives or the wait's deadline passes, and picks up from the
checkpoint alone, so an execution survives process restarts.

Terminal branches are concluded in two phases. A step records the chosen
terminal state as ``pending_outcome``; the next iteration runs that
branch's finalization activity and only then makes the transition. A
finalization interrupted by a retry delay is therefore re-run, never
skipped, and never run twice after it succeeds.
"""

import logging
from typing import Any, Callable, Optional

from ..clock import Clock, SystemClock
from ..config import OrchestratorConfig
from ..errors import ActivityFailedError
from ..models.execution import JobExecutionState, JobState, WaitKind
from ..models.signals import (
    CANCEL,
    JOB_COMPLETED,
    JOB_STARTED,
    OFFER_RESPONSE,
    REVIEW_SUBMITTED,
    CancelRequest,
    OfferResponse,
    ReviewSubmission,
)
from ..repositories import ExecutionStore
from ..retry import NO_RETRY, RetryPolicy
from .activities import JobActivities
from .coordinator import SignalCoordinator

logger = logging.getLogger(__name__)

OFFER_WAIT = "offer-decision"
START_WAIT = "job-start"
COMPLETION_WAIT = "job-completion"
REVIEW_WAIT = "reviews"


class _Suspended(Exception):
    """Raised inside a step when an activity retry is scheduled on a timer."""


class JobLifecycleController:
    """Advances JobExecutionState checkpoints."""

    def __init__(
        self,
        config: OrchestratorConfig,
        activities: JobActivities,
        coordinator: SignalCoordinator,
        store: ExecutionStore,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.activities = activities
        self.coordinator = coordinator
        self.store = store
        self.clock = clock or SystemClock()

        self._handlers: dict[JobState, Callable[[JobExecutionState], bool]] = {
            JobState.DRAFT: self._price,
            JobState.PRICED: self._send_offer,
            JobState.OFFER_SENT: self._await_offer,
            JobState.ACCEPTED: self._match_worker,
            JobState.WORKER_ASSIGNED: self._schedule,
            JobState.SCHEDULED: self._await_start,
            JobState.IN_PROGRESS: self._await_completion,
            JobState.COMPLETED: self._collect_payment,
            JobState.PAID: self._request_reviews,
            JobState.REVIEW_PENDING: self._collect_reviews,
        }

    # -------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------

    def advance(self, execution: JobExecutionState) -> JobExecutionState:
        """Run steps until the execution suspends or terminates.

        The checkpoint is saved after every step; a terminal execution is
        archived by the store.
        """
        while not execution.is_terminal:
            try:
                suspended = self._step(execution)
            except _Suspended:
                suspended = True
            except Exception as e:
                logger.exception("Job %s: unhandled error in state %s", execution.job_id, execution.state.value)
                self._abort(execution, f"{type(e).__name__}: {e}")
                suspended = False

            self.store.save(execution)
            if suspended and not self._timer_due(execution):
                break
        return execution

    def _timer_due(self, execution: JobExecutionState) -> bool:
        wait = execution.pending_wait
        return wait is not None and wait.kind == WaitKind.TIMER and wait.is_due(self.clock.now())

    def _step(self, execution: JobExecutionState) -> bool:
        """Run one step. Returns True when the execution is suspended."""
        if execution.pending_outcome is None and execution.cancel_reason is None:
            self._accept_cancellation(execution)

        wait = execution.pending_wait
        if wait is not None and wait.kind == WaitKind.TIMER:
            if not wait.is_due(self.clock.now()):
                return True
            execution.pending_wait = None

        if execution.pending_outcome is not None:
            self._finalize(execution)
            return False
        if execution.cancel_reason is not None:
            self._cancel(execution)
            return False

        return self._handlers[execution.state](execution)

    def _abort(self, execution: JobExecutionState, reason: str) -> None:
        execution.failure_reason = reason
        execution.pending_wait = None
        if execution.is_terminal:
            return
        if execution.pending_outcome == JobState.FAILED:
            # The failure handler itself blew up; stop without it
            execution.pending_outcome = None
            execution.transition_to(JobState.FAILED, self.clock.now())
            logger.error("Job %s: failed without finalization: %s", execution.job_id, reason)
        else:
            execution.pending_outcome = JobState.FAILED

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _transition(self, execution: JobExecutionState, target: JobState) -> None:
        source = execution.state
        execution.transition_to(target, self.clock.now())
        self.activities.record_job_status(execution.job_id, target)
        log = logger.error if target == JobState.FAILED else logger.info
        log("Job %s: %s -> %s", execution.job_id, source.value, target.value)

    def _conclude(self, execution: JobExecutionState, outcome: JobState, reason: Optional[str] = None) -> bool:
        execution.pending_outcome = outcome
        execution.pending_wait = None
        if reason:
            execution.failure_reason = reason
        return False

    def _run_activity(
        self,
        execution: JobExecutionState,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """Invoke an activity under a retry policy.

        Zero-delay retries run inline; otherwise a timer is registered
        and the step suspends. Attempts are counted on the checkpoint so
        they survive restarts.
        """
        policy = policy or self.config.activity_retry
        while True:
            try:
                result = fn(*args)
            except Exception as e:
                execution.step_attempts += 1
                if not policy.should_retry(execution.step_attempts, e):
                    attempts = execution.step_attempts
                    execution.step_attempts = 0
                    raise ActivityFailedError(name, attempts, e) from e

                delay = policy.delay_after(execution.step_attempts)
                logger.warning(
                    "Job %s: %s attempt %d failed (%s); retrying in %s",
                    execution.job_id, name, execution.step_attempts, e, delay,
                )
                if delay.total_seconds() > 0:
                    self.coordinator.sleep(execution, f"retry:{name}", delay, self.clock.now())
                    raise _Suspended() from e
                continue

            execution.step_attempts = 0
            return result

    # -------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------

    def _price(self, execution: JobExecutionState) -> bool:
        try:
            amount = self._run_activity(execution, "PriceJob", self.activities.price_job, execution.job_id, policy=NO_RETRY)
        except ActivityFailedError as e:
            logger.error("Job %s: pricing failed: %s", execution.job_id, e.cause)
            return self._conclude(execution, JobState.FAILED, str(e.cause))

        execution.priced_amount = amount
        self._transition(execution, JobState.PRICED)
        return False

    def _send_offer(self, execution: JobExecutionState) -> bool:
        try:
            self._run_activity(
                execution, "SendJobOffer", self.activities.send_job_offer,
                execution.job_id, execution.priced_amount,
            )
        except ActivityFailedError as e:
            return self._conclude(execution, JobState.FAILED, str(e))

        self._transition(execution, JobState.OFFER_SENT)
        return False

    def _await_offer(self, execution: JobExecutionState) -> bool:
        result = self.coordinator.poll(
            execution, OFFER_WAIT, [OFFER_RESPONSE], self.clock.now(),
            timeout=self.config.timeouts.offer_decision,
        )
        if result.pending:
            return True

        if result.timed_out:
            logger.info("Job %s: no offer decision in time; treating as rejection", execution.job_id)
            accepted = False
        else:
            accepted = OfferResponse.model_validate(result.payload).accepted

        if not accepted:
            return self._conclude(execution, JobState.REJECTED)
        self._transition(execution, JobState.ACCEPTED)
        return False

    def _match_worker(self, execution: JobExecutionState) -> bool:
        attempt_number = execution.matching_attempts + 1
        try:
            result = self._run_activity(
                execution, "FindMatchingWorker", self.activities.find_matching_worker,
                execution.job_id, attempt_number, policy=NO_RETRY,
            )
        except ActivityFailedError as e:
            logger.warning("Job %s: matching attempt %d errored: %s", execution.job_id, attempt_number, e.cause)
            result = self.activities.matcher.next_attempt(attempt_number, None)

        execution.matching_attempts = attempt_number
        if result.matched:
            execution.assigned_worker_id = result.worker_id
            self._transition(execution, JobState.WORKER_ASSIGNED)
            return False
        if result.exhausted:
            logger.warning("Job %s: no worker after %d attempts", execution.job_id, attempt_number)
            return self._conclude(execution, JobState.NO_WORKER_AVAILABLE)

        self.coordinator.sleep(execution, f"matching-backoff:{attempt_number}", result.retry_after, self.clock.now())
        return True

    def _schedule(self, execution: JobExecutionState) -> bool:
        try:
            self._run_activity(
                execution, "ScheduleJob", self.activities.schedule_job,
                execution.job_id, execution.assigned_worker_id,
            )
        except ActivityFailedError as e:
            self._release_worker(execution)
            return self._conclude(execution, JobState.FAILED, str(e))

        self._transition(execution, JobState.SCHEDULED)
        return False

    def _await_start(self, execution: JobExecutionState) -> bool:
        result = self.coordinator.poll(execution, START_WAIT, [JOB_STARTED], self.clock.now())
        if result.pending:
            return True
        self._transition(execution, JobState.IN_PROGRESS)
        return False

    def _await_completion(self, execution: JobExecutionState) -> bool:
        result = self.coordinator.poll(execution, COMPLETION_WAIT, [JOB_COMPLETED], self.clock.now())
        if result.pending:
            return True
        self._transition(execution, JobState.COMPLETED)
        return False

    def _collect_payment(self, execution: JobExecutionState) -> bool:
        try:
            if execution.authorization_id is None:
                execution.authorization_id = self._run_activity(
                    execution, "AuthorizeJobPayment", self.activities.authorize_job_payment,
                    execution.job_id, execution.priced_amount,
                    f"authorize:{execution.job_id}:{execution.execution_id}",
                )
                self.store.save(execution)

            self._run_activity(
                execution, "CaptureJobPayment", self.activities.capture_job_payment,
                execution.authorization_id,
            )
        except ActivityFailedError as e:
            logger.error("Job %s: payment failed: %s", execution.job_id, e)
            self._release_worker(execution)
            return self._conclude(execution, JobState.PAYMENT_FAILED, str(e))

        self._release_worker(execution)
        self._transition(execution, JobState.PAID)
        return False

    def _request_reviews(self, execution: JobExecutionState) -> bool:
        try:
            self._run_activity(execution, "RequestReviews", self.activities.request_reviews, execution.job_id)
        except ActivityFailedError as e:
            logger.warning("Job %s: review request failed, continuing: %s", execution.job_id, e)

        execution.review_deadline = self.clock.now() + self.config.timeouts.review_window
        self._transition(execution, JobState.REVIEW_PENDING)
        return False

    def _collect_reviews(self, execution: JobExecutionState) -> bool:
        while execution.reviews_received < self.config.reviews_required:
            result = self.coordinator.poll(
                execution, REVIEW_WAIT, [REVIEW_SUBMITTED], self.clock.now(),
                deadline=execution.review_deadline,
            )
            if result.pending:
                return True
            if result.timed_out:
                logger.info(
                    "Job %s: review window closed with %d review(s)",
                    execution.job_id, execution.reviews_received,
                )
                break

            review = ReviewSubmission.model_validate(result.payload)
            execution.reviews_received += 1
            logger.info(
                "Job %s: review %d from %s (rating %d)",
                execution.job_id, execution.reviews_received, review.reviewer_id, review.rating,
            )

        return self._conclude(execution, JobState.CLOSED)

    # -------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------

    def _accept_cancellation(self, execution: JobExecutionState) -> None:
        delivery = self.coordinator.take(execution, [CANCEL])
        if delivery is None:
            return
        request = CancelRequest.model_validate(delivery.payload)
        execution.cancel_reason = request.reason
        execution.cancelled_by = request.requested_by
        execution.pending_wait = None
        logger.info("Job %s: cancellation requested by %s (%s)", execution.job_id, request.requested_by, request.reason)

    def _cancel(self, execution: JobExecutionState) -> None:
        if execution.authorization_id and execution.refund_id is None:
            try:
                execution.refund_id = self._run_activity(
                    execution, "RefundJobPayment", self.activities.refund_job_payment,
                    execution.authorization_id, None, execution.cancel_reason,
                )
            except ActivityFailedError as e:
                logger.error("Job %s: refund during cancellation failed: %s", execution.job_id, e)
                self._conclude(execution, JobState.FAILED, str(e))
                return

        self._release_worker(execution)
        self._conclude(execution, JobState.CANCELLED)

    def _release_worker(self, execution: JobExecutionState) -> None:
        if not execution.assigned_worker_id:
            return
        try:
            self._run_activity(
                execution, "ReleaseWorker", self.activities.release_worker,
                execution.job_id, execution.assigned_worker_id, policy=NO_RETRY,
            )
        except ActivityFailedError as e:
            logger.warning("Job %s: could not release worker %s: %s",
                           execution.job_id, execution.assigned_worker_id, e)

    # -------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------

    def _finalize(self, execution: JobExecutionState) -> None:
        outcome = execution.pending_outcome
        job_id = execution.job_id
        finalizers: dict[JobState, tuple[str, Callable[..., Any], tuple]] = {
            JobState.REJECTED: ("HandleJobRejection", self.activities.handle_job_rejection, (job_id,)),
            JobState.NO_WORKER_AVAILABLE: (
                "HandleNoWorkerAvailable", self.activities.handle_no_worker_available, (job_id,),
            ),
            JobState.PAYMENT_FAILED: ("HandlePaymentFailure", self.activities.handle_payment_failure, (job_id,)),
            JobState.CLOSED: ("CloseJob", self.activities.close_job, (job_id,)),
            JobState.CANCELLED: (
                "HandleJobCancellation", self.activities.handle_job_cancellation,
                (job_id, execution.cancel_reason or ""),
            ),
            JobState.FAILED: (
                "HandleExecutionFailure", self.activities.handle_execution_failure,
                (job_id, execution.failure_reason or ""),
            ),
        }
        name, fn, args = finalizers[outcome]

        try:
            self._run_activity(execution, name, fn, *args)
        except ActivityFailedError as e:
            if outcome != JobState.FAILED:
                logger.error("Job %s: %s failed: %s", job_id, name, e)
                execution.pending_outcome = JobState.FAILED
                execution.failure_reason = str(e)
                return
            logger.error("Job %s: %s failed: %s", job_id, name, e)

        execution.pending_outcome = None
        execution.finalized = True
        self._transition(execution, outcome)
