"""Job execution state: lifecycle enum, transition table, and checkpoint."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from ..errors import InvalidTransitionError
from ..money import money_str, to_decimal


class JobState(Enum):
    """Job lifecycle states."""

    DRAFT = "draft"
    PRICED = "priced"
    OFFER_SENT = "offer_sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WORKER_ASSIGNED = "worker_assigned"
    NO_WORKER_AVAILABLE = "no_worker_available"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    REVIEW_PENDING = "review_pending"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"            # Unhandled error at a fatal step

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    JobState.REJECTED,
    JobState.NO_WORKER_AVAILABLE,
    JobState.PAYMENT_FAILED,
    JobState.CLOSED,
    JobState.CANCELLED,
    JobState.FAILED,
})

# Legal transitions: (from_state, to_state)
_TRANSITIONS: set[tuple[JobState, JobState]] = {
    (JobState.DRAFT, JobState.PRICED),
    (JobState.PRICED, JobState.OFFER_SENT),
    (JobState.OFFER_SENT, JobState.ACCEPTED),
    (JobState.OFFER_SENT, JobState.REJECTED),
    (JobState.ACCEPTED, JobState.WORKER_ASSIGNED),
    (JobState.ACCEPTED, JobState.NO_WORKER_AVAILABLE),
    (JobState.WORKER_ASSIGNED, JobState.SCHEDULED),
    (JobState.SCHEDULED, JobState.IN_PROGRESS),
    (JobState.IN_PROGRESS, JobState.COMPLETED),
    (JobState.COMPLETED, JobState.PAID),
    (JobState.COMPLETED, JobState.PAYMENT_FAILED),
    (JobState.PAID, JobState.REVIEW_PENDING),
    (JobState.REVIEW_PENDING, JobState.CLOSED),
}

# Cancellation and abort are reachable from any non-terminal state
for _state in JobState:
    if _state not in TERMINAL_STATES:
        _TRANSITIONS.add((_state, JobState.CANCELLED))
        _TRANSITIONS.add((_state, JobState.FAILED))


def can_transition(source: JobState, target: JobState) -> bool:
    return (source, target) in _TRANSITIONS


def is_valid_path(states: list[JobState]) -> bool:
    """Check that a sequence of observed states follows the lifecycle graph."""
    if not states or states[0] != JobState.DRAFT:
        return False
    return all(can_transition(a, b) for a, b in zip(states, states[1:]))


class WaitKind(Enum):
    SIGNAL = "signal"
    TIMER = "timer"


@dataclass
class PendingWait:
    """A registered suspension point.

    ``names`` are the signals that satisfy the wait; a timer wait has no
    names and only a deadline. ``deadline`` of None means wait forever.
    """

    kind: WaitKind
    key: str
    names: list[str] = field(default_factory=list)
    deadline: Optional[datetime] = None
    registered_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        return self.deadline is not None and now >= self.deadline

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "names": self.names,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingWait":
        return cls(
            kind=WaitKind(data["kind"]),
            key=data["key"],
            names=data.get("names", []),
            deadline=datetime.fromisoformat(data["deadline"]) if data.get("deadline") else None,
            registered_at=datetime.fromisoformat(data["registered_at"]) if data.get("registered_at") else None,
        )


@dataclass
class SignalDelivery:
    """One signal delivered into an execution's inbox."""

    delivery_id: str
    name: str
    payload: dict[str, Any]
    received_at: datetime
    sequence: int
    consumed: bool = False

    def to_dict(self) -> dict:
        return {
            "delivery_id": self.delivery_id,
            "name": self.name,
            "payload": self.payload,
            "received_at": self.received_at.isoformat(),
            "sequence": self.sequence,
            "consumed": self.consumed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SignalDelivery":
        return cls(
            delivery_id=data["delivery_id"],
            name=data["name"],
            payload=data.get("payload", {}),
            received_at=datetime.fromisoformat(data["received_at"]),
            sequence=data["sequence"],
            consumed=data.get("consumed", False),
        )


@dataclass
class JobExecutionState:
    """Checkpoint of one job's lifecycle execution.

    Mutated only by the controller and written to disk before every
    suspension, so an execution can be resumed from this record alone.
    """

    job_id: str
    consumer_id: str
    execution_id: str = ""
    state: JobState = JobState.DRAFT

    # Lifecycle data
    priced_amount: Optional[Decimal] = None
    assigned_worker_id: Optional[str] = None
    matching_attempts: int = 0
    reviews_received: int = 0
    review_deadline: Optional[datetime] = None
    authorization_id: Optional[str] = None
    refund_id: Optional[str] = None

    # Suspension and signals
    pending_wait: Optional[PendingWait] = None
    inbox: list[SignalDelivery] = field(default_factory=list)
    next_sequence: int = 0

    # Current step retry bookkeeping
    step_attempts: int = 0

    # Conclusion
    pending_outcome: Optional[JobState] = None   # Terminal state awaiting its finalization activity
    finalized: bool = False
    failure_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    history: list[dict] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def observed_states(self) -> list[JobState]:
        return [JobState(h["state"]) for h in self.history]

    def transition_to(self, target: JobState, now: datetime) -> None:
        """Move to ``target``; raises InvalidTransitionError if not allowed."""
        if not can_transition(self.state, target):
            raise InvalidTransitionError(
                f"Job {self.job_id}: illegal transition {self.state.value} -> {target.value}"
            )
        self.state = target
        self.step_attempts = 0
        self.history.append({"state": target.value, "at": now.isoformat()})
        self.updated_at = now

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "consumer_id": self.consumer_id,
            "execution_id": self.execution_id,
            "state": self.state.value,
            "priced_amount": money_str(self.priced_amount) if self.priced_amount is not None else None,
            "assigned_worker_id": self.assigned_worker_id,
            "matching_attempts": self.matching_attempts,
            "reviews_received": self.reviews_received,
            "review_deadline": self.review_deadline.isoformat() if self.review_deadline else None,
            "authorization_id": self.authorization_id,
            "refund_id": self.refund_id,
            "pending_wait": self.pending_wait.to_dict() if self.pending_wait else None,
            "inbox": [d.to_dict() for d in self.inbox],
            "next_sequence": self.next_sequence,
            "step_attempts": self.step_attempts,
            "finalized": self.finalized,
            "pending_outcome": self.pending_outcome.value if self.pending_outcome else None,
            "failure_reason": self.failure_reason,
            "cancel_reason": self.cancel_reason,
            "cancelled_by": self.cancelled_by,
            "history": self.history,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JobExecutionState":
        execution = cls(
            job_id=data["job_id"],
            consumer_id=data["consumer_id"],
            execution_id=data.get("execution_id", ""),
            state=JobState(data.get("state", "draft")),
            priced_amount=to_decimal(data["priced_amount"]) if data.get("priced_amount") is not None else None,
            assigned_worker_id=data.get("assigned_worker_id"),
            matching_attempts=data.get("matching_attempts", 0),
            reviews_received=data.get("reviews_received", 0),
            authorization_id=data.get("authorization_id"),
            refund_id=data.get("refund_id"),
            pending_wait=PendingWait.from_dict(data["pending_wait"]) if data.get("pending_wait") else None,
            inbox=[SignalDelivery.from_dict(d) for d in data.get("inbox", [])],
            next_sequence=data.get("next_sequence", 0),
            step_attempts=data.get("step_attempts", 0),
            finalized=data.get("finalized", False),
            pending_outcome=JobState(data["pending_outcome"]) if data.get("pending_outcome") else None,
            failure_reason=data.get("failure_reason"),
            cancel_reason=data.get("cancel_reason"),
            cancelled_by=data.get("cancelled_by"),
            history=data.get("history", []),
        )

        for field_name in ["review_deadline", "created_at", "updated_at"]:
            if data.get(field_name):
                setattr(execution, field_name, datetime.fromisoformat(data[field_name]))

        return execution
