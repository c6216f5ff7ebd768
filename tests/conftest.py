"""Shared fixtures: temporary data directory, manual clock, sandbox gateway."""

from decimal import Decimal

import pytest

from job_orchestrator.clock import ManualClock
from job_orchestrator.config import OrchestratorConfig
from job_orchestrator.escrow import SandboxGateway
from job_orchestrator.models.job import JobUrgency
from job_orchestrator.retry import RetryPolicy
from job_orchestrator.workflows import JobOrchestrator

CONSUMER = "USR-CONSUMER"


class RecordingNotifier:
    """Keeps notifications in memory for assertions."""

    def __init__(self):
        self.sent = []

    def notify(self, recipient_id, event, data):
        self.sent.append((recipient_id, event, data))

    def events(self, event):
        return [n for n in self.sent if n[1] == event]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config(tmp_path):
    """Defaults, but activity and payment retries happen without delay."""
    return OrchestratorConfig(
        data_dir=tmp_path / "data",
        activity_retry=RetryPolicy(max_attempts=3, initial_interval=0.0),
        payment_retry=RetryPolicy(max_attempts=5, initial_interval=0.0),
    )


@pytest.fixture
def gateway():
    return SandboxGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(config, gateway, clock, notifier):
    return JobOrchestrator(config, gateway=gateway, clock=clock, notifier=notifier)


@pytest.fixture
def hundred_dollar_job(orchestrator):
    """4 hours at $25/h with low urgency prices at exactly $100.00."""
    orchestrator.add_worker("Sam", 3.2)
    orchestrator.add_worker("Dana", 4.8)
    return orchestrator.submit_job(
        consumer_id=CONSUMER,
        title="Fix kitchen sink",
        estimated_duration_hours=Decimal("4"),
        urgency=JobUrgency.LOW,
        payment_source="tok_visa",
    )


def drive_to_review(orchestrator, job_id):
    """Accept, start and complete a job so it lands in review_pending."""
    orchestrator.start(job_id)
    orchestrator.signal(job_id, "offer-response", {"accepted": True})
    orchestrator.signal(job_id, "job-started")
    return orchestrator.signal(job_id, "job-completed")
