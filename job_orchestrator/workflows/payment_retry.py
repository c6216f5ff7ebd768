"""Out-of-band payment retry for jobs that ended in ``payment_failed``.

Runs on its own cadence, separate from the job lifecycle: each job gets
a record in ``payment_retries/<job_id>.json`` and ``tick()`` attempts the
capture whenever the next attempt is due. Success marks the job paid;
exhaustion sends the final failure notification.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from ..clock import Clock, SystemClock
from ..config import OrchestratorConfig
from ..errors import InvalidTransitionError, NotFoundError
from ..storage import atomic_write_json, lock_for, read_json
from .activities import JobActivities

logger = logging.getLogger(__name__)


class RetryStatus(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class PaymentRetryRecord:
    """Durable state of one job's payment retry."""

    job_id: str
    transaction_id: str
    status: RetryStatus = RetryStatus.RUNNING
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "transaction_id": self.transaction_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "last_error": self.last_error,
            "errors": self.errors,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRetryRecord":
        record = cls(
            job_id=data["job_id"],
            transaction_id=data["transaction_id"],
            status=RetryStatus(data.get("status", "running")),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
            errors=data.get("errors", []),
        )
        for field_name in ["next_attempt_at", "created_at", "updated_at"]:
            if data.get(field_name):
                setattr(record, field_name, datetime.fromisoformat(data[field_name]))
        return record


class PaymentRetryWorkflow:
    """Retries capture with exponential backoff, up to ``payment_retry.max_attempts``."""

    def __init__(
        self,
        config: OrchestratorConfig,
        activities: JobActivities,
        data_dir: Path,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.policy = config.payment_retry
        self.activities = activities
        self.retry_dir = Path(data_dir) / "payment_retries"
        self.retry_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock or SystemClock()

    def _path(self, job_id: str) -> Path:
        return self.retry_dir / f"{job_id}.json"

    def _save(self, record: PaymentRetryRecord) -> None:
        record.updated_at = self.clock.now()
        atomic_write_json(self._path(record.job_id), record.to_dict())

    def get(self, job_id: str) -> PaymentRetryRecord:
        data = read_json(self._path(job_id), lambda: None)
        if data is None:
            raise NotFoundError(f"No payment retry for job {job_id}")
        return PaymentRetryRecord.from_dict(data)

    def list_records(self) -> list[PaymentRetryRecord]:
        return [self.get(p.stem) for p in sorted(self.retry_dir.glob("*.json"))]

    def start(self, job_id: str, transaction_id: str) -> PaymentRetryRecord:
        """Begin retrying; the first attempt runs immediately."""
        with lock_for(self._path(job_id)):
            existing = read_json(self._path(job_id), lambda: None)
            if existing and existing["status"] == RetryStatus.RUNNING.value:
                raise InvalidTransitionError(f"Payment retry already running for job {job_id}")

            now = self.clock.now()
            record = PaymentRetryRecord(
                job_id=job_id,
                transaction_id=transaction_id,
                next_attempt_at=now,
                created_at=now,
            )
            self._save(record)
            logger.info("Started payment retry for job %s (%s)", job_id, transaction_id)
            return self._drive(record)

    def tick(self) -> list[PaymentRetryRecord]:
        """Attempt every running retry whose next attempt is due."""
        driven = []
        now = self.clock.now()
        for record in self.list_records():
            if record.status != RetryStatus.RUNNING or record.next_attempt_at > now:
                continue
            with lock_for(self._path(record.job_id)):
                driven.append(self._drive(self.get(record.job_id)))
        return driven

    def _drive(self, record: PaymentRetryRecord) -> PaymentRetryRecord:
        while record.status == RetryStatus.RUNNING and record.next_attempt_at <= self.clock.now():
            self._attempt(record)
            self._save(record)
        return record

    def _attempt(self, record: PaymentRetryRecord) -> None:
        record.attempts += 1
        try:
            captured = self.activities.capture_job_payment(record.transaction_id)
        except Exception as e:
            record.last_error = str(e)
            record.errors.append(f"attempt {record.attempts}: {e}")
            if self.policy.should_retry(record.attempts, e):
                delay = self.policy.delay_after(record.attempts)
                record.next_attempt_at = self.clock.now() + delay
                logger.warning(
                    "Payment retry %d for job %s failed (%s); next attempt in %s",
                    record.attempts, record.job_id, e, delay,
                )
            else:
                record.status = RetryStatus.EXHAUSTED
                record.next_attempt_at = None
                logger.error("Payment retry for job %s gave up after %d attempt(s)", record.job_id, record.attempts)
                self.activities.handle_payment_failure(record.job_id)
            return

        record.status = RetryStatus.SUCCEEDED
        record.next_attempt_at = None
        record.last_error = None
        self.activities.update_job_payment_status(record.job_id, captured.id)
        logger.info("Payment retry for job %s captured %s", record.job_id, captured.id)
