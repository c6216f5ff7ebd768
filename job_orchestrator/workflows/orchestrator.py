"""Entry point wiring repositories, escrow and the lifecycle controller together."""

import logging
import uuid
from decimal import Decimal
from typing import Any, Optional

from ..clock import Clock, SystemClock
from ..config import OrchestratorConfig
from ..errors import InvalidTransitionError, NotFoundError
from ..escrow.gateway import PaymentGateway, SandboxGateway
from ..escrow.ledger import TransactionLedger
from ..escrow.manager import SYSTEM_ACTOR, EscrowManager, ReconciliationItem
from ..models.execution import JobExecutionState, JobState
from ..models.job import Job, JobUrgency
from ..models.signals import CANCEL, parse_signal
from ..models.transaction import TransactionRecord
from ..models.worker import Worker
from ..money import Number, to_decimal
from ..repositories import ExecutionStore, JobRepository
from .activities import JobActivities, Notifier
from .controller import JobLifecycleController
from .coordinator import SignalCoordinator
from .matching import WorkerPool
from .payment_retry import PaymentRetryRecord, PaymentRetryWorkflow

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """
    Facade over one data directory.

    Every operation on a job holds that job's execution lock, so signals,
    cancellations and timer ticks for the same job never interleave.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        gateway: Optional[PaymentGateway] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.config = config
        self.clock = clock or SystemClock()
        data_dir = config.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)

        self.jobs = JobRepository(data_dir)
        self.workers = WorkerPool(data_dir)
        self.store = ExecutionStore(data_dir)
        self.ledger = TransactionLedger(data_dir)
        self.gateway = gateway or SandboxGateway(data_dir / "sandbox_gateway.json")
        self.escrow = EscrowManager(config, self.ledger, self.gateway, self.jobs, self.clock)
        self.activities = JobActivities(config, self.jobs, self.workers, self.escrow, notifier, self.clock)
        self.coordinator = SignalCoordinator()
        self.controller = JobLifecycleController(config, self.activities, self.coordinator, self.store, self.clock)
        self.payment_retries = PaymentRetryWorkflow(config, self.activities, data_dir, self.clock)

    # -------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------

    def add_worker(self, name: str, rating: float, category: str = "") -> Worker:
        return self.workers.add(Worker(name=name, rating=rating, category=category, created_at=self.clock.now()))

    def submit_job(
        self,
        consumer_id: str,
        title: str,
        estimated_duration_hours: Number,
        urgency: JobUrgency = JobUrgency.MEDIUM,
        payment_source: Optional[str] = None,
        description: str = "",
        category: str = "",
        location: str = "",
    ) -> Job:
        """Create a draft job record ready to be started."""
        now = self.clock.now()
        job = Job(
            consumer_id=consumer_id,
            title=title,
            description=description,
            category=category,
            location=location,
            estimated_duration_hours=to_decimal(estimated_duration_hours),
            urgency=urgency,
            payment_source=payment_source,
            created_at=now,
            updated_at=now,
        )
        self.jobs.add(job)
        logger.info("Submitted job %s for consumer %s", job.id, consumer_id)
        return job

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def start(self, job_id: str) -> JobExecutionState:
        """Begin orchestrating a draft job."""
        job = self.jobs.get(job_id)
        with self.store.lock(job_id):
            if self.store.get_active(job_id) is not None:
                raise InvalidTransitionError(f"Job {job_id} already has an active execution")
            if job.status != JobState.DRAFT:
                raise InvalidTransitionError(f"Job {job_id} is {job.status.value}, not draft")

            now = self.clock.now()
            execution = JobExecutionState(
                job_id=job.id,
                consumer_id=job.consumer_id,
                execution_id=f"EXE-{uuid.uuid4().hex[:8].upper()}",
                history=[{"state": JobState.DRAFT.value, "at": now.isoformat()}],
                created_at=now,
                updated_at=now,
            )
            self.store.create(execution)
            logger.info("Started execution %s for job %s", execution.execution_id, job_id)
            return self.controller.advance(execution)

    def _active(self, job_id: str) -> JobExecutionState:
        execution = self.store.get_active(job_id)
        if execution is None:
            if self.store.has_archived(job_id):
                raise InvalidTransitionError(f"Execution for job {job_id} has already finished")
            raise NotFoundError(f"No execution for job {job_id}")
        return execution

    def signal(
        self,
        job_id: str,
        name: str,
        payload: Optional[dict[str, Any]] = None,
        delivery_id: Optional[str] = None,
    ) -> JobExecutionState:
        """Deliver a signal and let the execution react to it."""
        try:
            parsed = parse_signal(name, payload)
        except KeyError:
            raise NotFoundError(f"Unknown signal: {name}") from None

        delivery_id = delivery_id or parsed.delivery_id()
        with self.store.lock(job_id):
            if self.store.get_active(job_id) is None and self.store.has_archived(job_id):
                finished = self.store.get(job_id)
                if any(d.delivery_id == delivery_id for d in finished.inbox):
                    logger.warning("Duplicate signal %s for finished job %s ignored", delivery_id, job_id)
                    return finished

            execution = self._active(job_id)
            delivered = self.coordinator.deliver(
                execution,
                name,
                parsed.model_dump(mode="json"),
                delivery_id,
                self.clock.now(),
            )
            if not delivered:
                return execution
            self.store.save(execution)
            return self.controller.advance(execution)

    def cancel(
        self,
        job_id: str,
        reason: str = "cancelled by administrator",
        requested_by: str = SYSTEM_ACTOR,
        delivery_id: Optional[str] = None,
    ) -> JobExecutionState:
        """Cancel a job. Pass the same ``delivery_id`` when redelivering one request."""
        return self.signal(
            job_id, CANCEL, {"reason": reason, "requested_by": requested_by},
            delivery_id=delivery_id or f"{CANCEL}:{uuid.uuid4().hex[:8]}",
        )

    def tick(self) -> list[JobExecutionState]:
        """Resume every execution whose wait deadline has passed, then due payment retries."""
        advanced = []
        now = self.clock.now()
        for job_id in self.store.active_job_ids():
            with self.store.lock(job_id):
                execution = self.store.get_active(job_id)
                if execution is None or execution.pending_wait is None:
                    continue
                if execution.pending_wait.is_due(now):
                    advanced.append(self.controller.advance(execution))
        self.payment_retries.tick()
        return advanced

    def recover(self) -> tuple[list[ReconciliationItem], list[JobExecutionState]]:
        """Reconcile the ledger, then resume every active execution."""
        items = self.escrow.reconcile()
        resumed = []
        for job_id in self.store.active_job_ids():
            with self.store.lock(job_id):
                execution = self.store.get_active(job_id)
                if execution is not None:
                    resumed.append(self.controller.advance(execution))
        logger.info("Recovered %d execution(s), %d ledger item(s)", len(resumed), len(items))
        return items, resumed

    def get_execution(self, job_id: str) -> JobExecutionState:
        return self.store.get(job_id)

    # -------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------

    def _authorization(self, job_id: str) -> TransactionRecord:
        record = self.escrow.latest_authorization(job_id)
        if record is None:
            raise NotFoundError(f"No authorization for job {job_id}")
        return record

    def retry_payment(self, job_id: str) -> PaymentRetryRecord:
        """Start the out-of-band capture retry for a job in payment_failed."""
        job = self.jobs.get(job_id)
        if job.status != JobState.PAYMENT_FAILED:
            raise InvalidTransitionError(f"Job {job_id} is {job.status.value}, not payment_failed")
        return self.payment_retries.start(job_id, self._authorization(job_id).id)

    def capture_payment(self, job_id: str, amount: Optional[Decimal] = None, actor_id: str = SYSTEM_ACTOR) -> TransactionRecord:
        """Manual capture of the job's authorization by an operator."""
        return self.escrow.capture(self._authorization(job_id).id, amount, actor_id=actor_id)

    def refund_payment(
        self,
        job_id: str,
        amount: Optional[Decimal] = None,
        reason: str = "",
        actor_id: str = SYSTEM_ACTOR,
    ) -> TransactionRecord:
        return self.escrow.refund(self._authorization(job_id).id, amount, reason, actor_id=actor_id)
