from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal, Optional

Difficulty = Literal["easy", "medium", "hard"]
AssignmentStatus = Literal["pending", "completed", "expired"]

DIFFICULTIES: tuple = ("easy", "medium", "hard")


@dataclass(frozen=True)
class ChallengeDefinition:
    """Published challenge template. Never mutated once in the catalog."""

    definition_id: str
    topic_id: str
    topic_name: str
    difficulty: Difficulty
    metric: str = "questions_solved"
    target_count: int = 3
    reward_points: int = 50


def assignment_id_for(user_id: str, day: date) -> str:
    """Stable id for the (user_id, date) idempotence key."""
    return hashlib.sha256(f"{user_id}:{day.isoformat()}".encode("utf-8")).hexdigest()[:32]


@dataclass
class ChallengeAssignment:
    """One user's challenge for one calendar day."""

    assignment_id: str
    user_id: str
    date: date
    definition_id: str
    topic_id: str
    difficulty: Difficulty
    target_count: int
    reward_points: int
    created_at: datetime
    progress: int = 0
    status: AssignmentStatus = "pending"
    completed_at: Optional[datetime] = None

    @classmethod
    def from_definition(
        cls,
        *,
        user_id: str,
        day: date,
        definition: ChallengeDefinition,
        created_at: datetime,
    ) -> "ChallengeAssignment":
        return cls(
            assignment_id=assignment_id_for(user_id, day),
            user_id=user_id,
            date=day,
            definition_id=definition.definition_id,
            topic_id=definition.topic_id,
            difficulty=definition.difficulty,
            target_count=definition.target_count,
            reward_points=definition.reward_points,
            created_at=created_at,
        )

    def to_dict(self) -> dict:
        return {
            "assignment_id": self.assignment_id,
            "user_id": self.user_id,
            "date": self.date.isoformat(),
            "definition_id": self.definition_id,
            "topic_id": self.topic_id,
            "difficulty": self.difficulty,
            "target_count": self.target_count,
            "progress": self.progress,
            "reward_points": self.reward_points,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class GenerationReport:
    """Counts for one generation run."""

    reference_date: date
    attempted: int = 0
    created: int = 0
    skipped_existing: int = 0
    failed: int = 0
    expired: int = 0
    cancelled: bool = False
    failed_user_ids: list = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.failed == 0:
            return "success"
        if self.failed >= self.attempted:
            return "failure"
        return "partial"

    def as_dict(self) -> dict:
        return {
            "reference_date": self.reference_date.isoformat(),
            "attempted": self.attempted,
            "created": self.created,
            "skipped": self.skipped_existing,
            "failed": self.failed,
            "expired": self.expired,
            "outcome": self.outcome,
        }
