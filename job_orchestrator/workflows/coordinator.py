"""Signal/timeout coordination for suspended executions.

Signals are appended to the execution's inbox when they arrive, whether
or not anything is waiting for them yet. A wait consumes the earliest
unconsumed delivery matching its names; consumed deliveries stay in the
inbox so their ids keep deduplicating redeliveries.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from ..models.execution import JobExecutionState, PendingWait, SignalDelivery, WaitKind

logger = logging.getLogger(__name__)


class WaitStatus(Enum):
    RECEIVED = "received"
    TIMED_OUT = "timed_out"
    PENDING = "pending"


@dataclass
class WaitResult:
    status: WaitStatus
    delivery: Optional[SignalDelivery] = None

    @property
    def received(self) -> bool:
        return self.status == WaitStatus.RECEIVED

    @property
    def timed_out(self) -> bool:
        return self.status == WaitStatus.TIMED_OUT

    @property
    def pending(self) -> bool:
        return self.status == WaitStatus.PENDING

    @property
    def payload(self) -> dict[str, Any]:
        return self.delivery.payload if self.delivery else {}


class SignalCoordinator:
    """Stateless helper; all state lives on the JobExecutionState."""

    def deliver(
        self,
        execution: JobExecutionState,
        name: str,
        payload: dict[str, Any],
        delivery_id: str,
        now: datetime,
    ) -> bool:
        """Add a signal to the inbox. Returns False for a duplicate delivery."""
        if any(d.delivery_id == delivery_id for d in execution.inbox):
            logger.warning("Duplicate signal %s for job %s ignored", delivery_id, execution.job_id)
            return False

        execution.inbox.append(SignalDelivery(
            delivery_id=delivery_id,
            name=name,
            payload=payload,
            received_at=now,
            sequence=execution.next_sequence,
        ))
        execution.next_sequence += 1
        logger.info("Signal %s delivered to job %s", name, execution.job_id)
        return True

    def take(self, execution: JobExecutionState, names: list[str]) -> Optional[SignalDelivery]:
        """Consume the earliest unconsumed delivery whose name is in ``names``."""
        waiting = [d for d in execution.inbox if not d.consumed and d.name in names]
        if not waiting:
            return None
        delivery = min(waiting, key=lambda d: d.sequence)
        delivery.consumed = True
        return delivery

    def has_unconsumed(self, execution: JobExecutionState, names: list[str]) -> bool:
        return any(not d.consumed and d.name in names for d in execution.inbox)

    def poll(
        self,
        execution: JobExecutionState,
        key: str,
        names: list[str],
        now: datetime,
        timeout: Optional[timedelta] = None,
        deadline: Optional[datetime] = None,
    ) -> WaitResult:
        """Race ``names`` against a deadline.

        The deadline is fixed when the wait is first registered: polling
        the same ``key`` again keeps the original deadline. Pass either a
        relative ``timeout`` or an absolute ``deadline``; neither means
        wait forever.
        """
        wait = execution.pending_wait
        if wait is not None and wait.key == key:
            deadline = wait.deadline
        elif deadline is None and timeout is not None:
            deadline = now + timeout

        delivery = self.take(execution, names)
        if delivery is not None:
            execution.pending_wait = None
            return WaitResult(WaitStatus.RECEIVED, delivery)

        if deadline is not None and now >= deadline:
            execution.pending_wait = None
            logger.info("Wait %s for job %s timed out", key, execution.job_id)
            return WaitResult(WaitStatus.TIMED_OUT)

        if wait is None or wait.key != key:
            execution.pending_wait = PendingWait(
                kind=WaitKind.SIGNAL,
                key=key,
                names=list(names),
                deadline=deadline,
                registered_at=now,
            )
            logger.debug("Job %s waiting on %s until %s", execution.job_id, names, deadline or "forever")
        return WaitResult(WaitStatus.PENDING)

    def sleep(self, execution: JobExecutionState, key: str, duration: timedelta, now: datetime) -> None:
        """Register a timer wait."""
        execution.pending_wait = PendingWait(
            kind=WaitKind.TIMER,
            key=key,
            deadline=now + duration,
            registered_at=now,
        )
        logger.debug("Job %s sleeping %s (%s)", execution.job_id, duration, key)
