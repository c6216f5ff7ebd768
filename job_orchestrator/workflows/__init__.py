"""Lifecycle orchestration: matching, signal coordination, activities and the controller."""

from .coordinator import SignalCoordinator, WaitResult, WaitStatus
from .matching import WorkerPool, WorkerMatcher, MatchAttempt, SELECTION_POLICIES, get_policy
from .activities import JobActivities, Notifier, LoggingNotifier
from .controller import JobLifecycleController
from .payment_retry import PaymentRetryWorkflow, PaymentRetryRecord, RetryStatus
from .orchestrator import JobOrchestrator

__all__ = [
    "SignalCoordinator",
    "WaitResult",
    "WaitStatus",
    "WorkerPool",
    "WorkerMatcher",
    "MatchAttempt",
    "SELECTION_POLICIES",
    "get_policy",
    "JobActivities",
    "Notifier",
    "LoggingNotifier",
    "JobLifecycleController",
    "PaymentRetryWorkflow",
    "PaymentRetryRecord",
    "RetryStatus",
    "JobOrchestrator",
]
