"""Worker availability record used by matching."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class Worker:
    """A gig worker who can be reserved for one job at a time."""

    id: str = field(default_factory=lambda: f"WRK-{uuid.uuid4().hex[:8].upper()}")
    name: str = ""
    rating: float = 0.0
    category: str = ""
    is_active: bool = True
    is_available: bool = True
    reserved_for: Optional[str] = None   # Job ID holding the reservation
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def can_be_reserved(self) -> bool:
        return self.is_active and self.is_available

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "rating": self.rating,
            "category": self.category,
            "is_active": self.is_active,
            "is_available": self.is_available,
            "reserved_for": self.reserved_for,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Worker":
        worker = cls(
            id=data["id"],
            name=data.get("name", ""),
            rating=float(data.get("rating", 0.0)),
            category=data.get("category", ""),
            is_active=data.get("is_active", True),
            is_available=data.get("is_available", True),
            reserved_for=data.get("reserved_for"),
        )
        if data.get("created_at"):
            worker.created_at = datetime.fromisoformat(data["created_at"])
        return worker
