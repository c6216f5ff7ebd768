"""File-backed repositories for job records and execution checkpoints."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import InvalidTransitionError, NotFoundError
from .models.execution import JobExecutionState, JobState
from .models.job import Job
from .storage import JsonDocument, atomic_write_json, lock_for, read_json

logger = logging.getLogger(__name__)


class JobRepository:
    """Job records stored in ``jobs.json``, keyed by job id."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._doc = JsonDocument(self.data_dir / "jobs.json", default=dict)

    def add(self, job: Job) -> Job:
        with self._doc.mutate() as jobs:
            if job.id in jobs:
                raise InvalidTransitionError(f"Job {job.id} already exists")
            jobs[job.id] = job.to_dict()
        return job

    def get(self, job_id: str) -> Job:
        jobs = self._doc.load()
        if job_id not in jobs:
            raise NotFoundError(f"Job not found: {job_id}")
        return Job.from_dict(jobs[job_id])

    def find(self, job_id: str) -> Optional[Job]:
        data = self._doc.load().get(job_id)
        return Job.from_dict(data) if data else None

    def list_jobs(self, status: Optional[JobState] = None) -> list[Job]:
        jobs = [Job.from_dict(j) for j in self._doc.load().values()]
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at)

    def update(self, job_id: str, **changes) -> Job:
        """Apply field changes to a job record in one write."""
        with self._doc.mutate() as jobs:
            if job_id not in jobs:
                raise NotFoundError(f"Job not found: {job_id}")
            job = Job.from_dict(jobs[job_id])
            for name, value in changes.items():
                setattr(job, name, value)
            job.updated_at = datetime.now(timezone.utc)
            jobs[job_id] = job.to_dict()
        return job

    def set_status(self, job_id: str, status: JobState, **changes) -> Job:
        job = self.update(job_id, status=status, **changes)
        logger.info("Job %s marked as %s", job_id, status.value)
        return job


class ExecutionStore:
    """Execution checkpoints.

    Active executions live in ``executions/<job_id>.json``; when an
    execution reaches a terminal state it is moved to
    ``executions/archive/<job_id>.json``. A job has at most one active file.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.active_dir = self.data_dir / "executions"
        self.archive_dir = self.active_dir / "archive"
        self.active_dir.mkdir(parents=True, exist_ok=True)
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def _active_path(self, job_id: str) -> Path:
        return self.active_dir / f"{job_id}.json"

    def _archive_path(self, job_id: str) -> Path:
        return self.archive_dir / f"{job_id}.json"

    def lock(self, job_id: str):
        """Lock serializing all advances of one job's execution."""
        return lock_for(self._active_path(job_id))

    def create(self, execution: JobExecutionState) -> JobExecutionState:
        path = self._active_path(execution.job_id)
        with self.lock(execution.job_id):
            if path.exists():
                raise InvalidTransitionError(
                    f"Job {execution.job_id} already has an active execution"
                )
            atomic_write_json(path, execution.to_dict())
        return execution

    def save(self, execution: JobExecutionState) -> None:
        """Checkpoint an execution; terminal executions are archived."""
        if execution.is_terminal:
            atomic_write_json(self._archive_path(execution.job_id), execution.to_dict())
            active = self._active_path(execution.job_id)
            if active.exists():
                active.unlink()
            logger.debug("Archived execution for job %s (%s)", execution.job_id, execution.state.value)
        else:
            atomic_write_json(self._active_path(execution.job_id), execution.to_dict())

    def get_active(self, job_id: str) -> Optional[JobExecutionState]:
        path = self._active_path(job_id)
        data = read_json(path, lambda: None)
        return JobExecutionState.from_dict(data) if data else None

    def get(self, job_id: str) -> JobExecutionState:
        """Active execution if any, otherwise the archived one."""
        execution = self.get_active(job_id)
        if execution is not None:
            return execution
        data = read_json(self._archive_path(job_id), lambda: None)
        if data is None:
            raise NotFoundError(f"No execution for job {job_id}")
        return JobExecutionState.from_dict(data)

    def has_archived(self, job_id: str) -> bool:
        return self._archive_path(job_id).exists()

    def active_job_ids(self) -> list[str]:
        return sorted(p.stem for p in self.active_dir.glob("*.json"))

    def list_active(self) -> list[JobExecutionState]:
        executions = []
        for job_id in self.active_job_ids():
            execution = self.get_active(job_id)
            if execution is not None:
                executions.append(execution)
        return executions
