"""Data models for jobs, workers, executions, transactions, and wire payloads."""

from .execution import JobState, JobExecutionState, PendingWait, SignalDelivery, WaitKind, TERMINAL_STATES
from .job import Job, JobUrgency
from .worker import Worker
from .transaction import (
    TransactionRecord,
    TransactionType,
    TransactionStatus,
    PaymentEvent,
    EventStatus,
    JobPaymentSummary,
)
from .gateway import ChargeResponse, CaptureResponse, RefundResponse, CardSource, LookupResult
from .signals import OfferResponse, JobStarted, JobCompleted, ReviewSubmission, CancelRequest, parse_signal

__all__ = [
    # Lifecycle
    "JobState",
    "JobExecutionState",
    "PendingWait",
    "SignalDelivery",
    "WaitKind",
    "TERMINAL_STATES",
    # Jobs & workers
    "Job",
    "JobUrgency",
    "Worker",
    # Ledger
    "TransactionRecord",
    "TransactionType",
    "TransactionStatus",
    "PaymentEvent",
    "EventStatus",
    "JobPaymentSummary",
    # Gateway
    "ChargeResponse",
    "CaptureResponse",
    "RefundResponse",
    "CardSource",
    "LookupResult",
    # Signals
    "OfferResponse",
    "JobStarted",
    "JobCompleted",
    "ReviewSubmission",
    "CancelRequest",
    "parse_signal",
]
