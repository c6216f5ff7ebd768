"""Job record as seen by the orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from ..money import money_str, to_decimal
from .execution import JobState


class JobUrgency(Enum):
    """How soon the consumer needs the job done."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class Job:
    """A marketplace job submitted for orchestration."""

    # Identity
    id: str = field(default_factory=lambda: f"JOB-{uuid.uuid4().hex[:8].upper()}")
    consumer_id: str = ""
    title: str = ""
    description: str = ""

    # Requirements
    category: str = ""
    location: str = ""
    estimated_duration_hours: Decimal = Decimal("1")
    urgency: JobUrgency = JobUrgency.MEDIUM

    # Payment
    payment_source: Optional[str] = None   # Card token held for authorization
    total_pay: Optional[Decimal] = None

    # Lifecycle
    status: JobState = JobState.DRAFT
    worker_id: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Serialize job to dictionary."""
        return {
            "id": self.id,
            "consumer_id": self.consumer_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "location": self.location,
            "estimated_duration_hours": str(self.estimated_duration_hours),
            "urgency": self.urgency.value,
            "payment_source": self.payment_source,
            "total_pay": money_str(self.total_pay) if self.total_pay is not None else None,
            "status": self.status.value,
            "worker_id": self.worker_id,
            "scheduled_start": self.scheduled_start.isoformat() if self.scheduled_start else None,
            "scheduled_end": self.scheduled_end.isoformat() if self.scheduled_end else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        """Deserialize job from dictionary."""
        job = cls(
            id=data["id"],
            consumer_id=data.get("consumer_id", ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            category=data.get("category", ""),
            location=data.get("location", ""),
            estimated_duration_hours=to_decimal(data.get("estimated_duration_hours", "1")),
            urgency=JobUrgency(data.get("urgency", "medium")),
            payment_source=data.get("payment_source"),
            total_pay=to_decimal(data["total_pay"]) if data.get("total_pay") is not None else None,
            status=JobState(data.get("status", "draft")),
            worker_id=data.get("worker_id"),
        )

        for field_name in ["scheduled_start", "scheduled_end", "completed_at", "created_at", "updated_at"]:
            if data.get(field_name):
                setattr(job, field_name, datetime.fromisoformat(data[field_name]))

        return job
