"""
Worker matching for accepted jobs.

A match attempt selects one worker with a pluggable selection policy and
reserves it in the same locked read-modify-write of ``workers.json``, so
two jobs racing for a small pool can never both hold the same worker.
The retry cadence between attempts belongs to the lifecycle controller,
which suspends on a timer instead of sleeping.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional, Protocol

from ..config import MatchingConfig
from ..errors import ConfigError, InvalidTransitionError, NotFoundError
from ..models.job import Job
from ..models.worker import Worker
from ..storage import JsonDocument

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------
# Selection policies
# -------------------------------------------------------------------

class SelectionPolicy(Protocol):
    """Chooses a worker from the currently reservable candidates."""

    name: str

    def select(self, candidates: list[Worker], job: Job) -> Optional[Worker]: ...


class HighestRatedPolicy:
    """Highest rating wins; ties go to the first worker seen."""

    name = "highest_rating"

    def select(self, candidates: list[Worker], job: Job) -> Optional[Worker]:
        if not candidates:
            return None
        # max() keeps the first of equal elements
        return max(candidates, key=lambda w: w.rating)


class CategoryThenRatingPolicy:
    """Prefer workers whose category matches the job, then by rating."""

    name = "category_then_rating"

    def select(self, candidates: list[Worker], job: Job) -> Optional[Worker]:
        matching = [w for w in candidates if job.category and w.category == job.category]
        return HighestRatedPolicy().select(matching or candidates, job)


class OldestPoolPolicy:
    """Highest rating among the ``pool_size`` longest-registered workers."""

    name = "oldest_pool"

    def __init__(self, pool_size: int = 5):
        self.pool_size = pool_size

    def select(self, candidates: list[Worker], job: Job) -> Optional[Worker]:
        pool = sorted(candidates, key=lambda w: w.created_at)[: self.pool_size]
        return HighestRatedPolicy().select(pool, job)


SELECTION_POLICIES = {
    HighestRatedPolicy.name: HighestRatedPolicy,
    CategoryThenRatingPolicy.name: CategoryThenRatingPolicy,
    OldestPoolPolicy.name: OldestPoolPolicy,
}


def get_policy(name: str) -> SelectionPolicy:
    try:
        return SELECTION_POLICIES[name]()
    except KeyError:
        raise ConfigError(
            f"Unknown selection policy '{name}'. Choose from: {', '.join(sorted(SELECTION_POLICIES))}"
        ) from None


# -------------------------------------------------------------------
# Worker pool
# -------------------------------------------------------------------

class WorkerPool:
    """Worker availability stored in ``workers.json``.

    Every mutation happens inside ``JsonDocument.mutate()``, which holds
    the file lock across the read, the availability check and the write.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._doc = JsonDocument(self.data_dir / "workers.json", default=dict)

    def add(self, worker: Worker) -> Worker:
        with self._doc.mutate() as workers:
            if worker.id in workers:
                raise InvalidTransitionError(f"Worker {worker.id} already exists")
            workers[worker.id] = worker.to_dict()
        logger.info("Registered worker %s (%s, rating %.1f)", worker.id, worker.name, worker.rating)
        return worker

    def get(self, worker_id: str) -> Worker:
        data = self._doc.load().get(worker_id)
        if data is None:
            raise NotFoundError(f"Worker not found: {worker_id}")
        return Worker.from_dict(data)

    def list_workers(self) -> list[Worker]:
        # workers.json keeps keys in registration order
        return [Worker.from_dict(w) for w in self._doc.load().values()]

    def reserve_best(self, job: Job, policy: SelectionPolicy) -> Optional[Worker]:
        """Select and reserve a worker for ``job`` in one atomic update.

        A worker already reserved for this job is returned as-is, so a
        repeated attempt after a crash does not reserve a second worker.
        """
        with self._doc.mutate() as workers:
            pool = [Worker.from_dict(w) for w in workers.values()]

            for worker in pool:
                if worker.reserved_for == job.id:
                    return worker

            candidates = [w for w in pool if w.can_be_reserved]
            chosen = policy.select(candidates, job)
            if chosen is None:
                return None

            chosen.is_available = False
            chosen.reserved_for = job.id
            workers[chosen.id] = chosen.to_dict()
            return chosen

    def release(self, worker_id: str, job_id: str) -> bool:
        """Make a worker available again if ``job_id`` holds it."""
        with self._doc.mutate() as workers:
            data = workers.get(worker_id)
            if data is None:
                raise NotFoundError(f"Worker not found: {worker_id}")
            worker = Worker.from_dict(data)
            if worker.reserved_for != job_id:
                return False
            worker.is_available = True
            worker.reserved_for = None
            workers[worker_id] = worker.to_dict()
        return True


# -------------------------------------------------------------------
# Attempts
# -------------------------------------------------------------------

@dataclass
class MatchAttempt:
    """Result of one matching attempt."""

    attempt: int
    worker_id: Optional[str]
    retry_after: Optional[timedelta]   # Backoff before the next attempt

    @property
    def matched(self) -> bool:
        return self.worker_id is not None

    @property
    def exhausted(self) -> bool:
        return not self.matched and self.retry_after is None


class WorkerMatcher:
    """Runs single matching attempts against the worker pool."""

    def __init__(self, pool: WorkerPool, config: MatchingConfig):
        self.pool = pool
        self.config = config
        self.policy = get_policy(config.selection_policy)

    def next_attempt(self, attempt_number: int, worker_id: Optional[str]) -> MatchAttempt:
        """Classify an attempt; no backoff follows the final attempt."""
        if worker_id is not None or attempt_number >= self.config.max_attempts:
            return MatchAttempt(attempt_number, worker_id, None)
        return MatchAttempt(attempt_number, None, self.config.backoff_for(attempt_number))

    def attempt(self, job: Job, attempt_number: int) -> MatchAttempt:
        worker = self.pool.reserve_best(job, self.policy)
        if worker is not None:
            logger.info(
                "Matched worker %s (rating %.1f) to job %s on attempt %d",
                worker.id, worker.rating, job.id, attempt_number,
            )
        else:
            logger.warning("No available worker for job %s (attempt %d/%d)",
                           job.id, attempt_number, self.config.max_attempts)
        return self.next_attempt(attempt_number, worker.id if worker else None)
