"""
Leaderboard models.

Snapshots are frozen: a refresh builds a new one and swaps it in, it never
edits the one readers are holding.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

GLOBAL_SCOPE = "global"


def topic_scope(topic_id: str) -> str:
    return f"topic:{topic_id}"


@dataclass(frozen=True)
class ScoreRecord:
    """One user's score as read from the source of truth."""

    user_id: str
    score: float
    display_name: Optional[str] = None
    achieved_at: Optional[datetime] = None  # when this score was reached
    questions_solved: int = 0
    streak: int = 0
    badges: int = 0


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: str
    rank: int = Field(ge=1)
    score: float
    questions_solved: int = Field(default=0, ge=0)
    streak: int = Field(default=0, ge=0)
    badges: int = Field(default=0, ge=0)
    computed_at: datetime


class LeaderboardSnapshot(BaseModel):
    """A fully computed ranking for one scope."""

    model_config = ConfigDict(frozen=True)

    scope: str = Field(description='"global" or "topic:<topic_id>"')
    version: str = Field(description="Unique per refresh; cache key suffix")
    computed_at: datetime
    entries: Tuple[LeaderboardEntry, ...] = ()

    def page(self, limit: int, skip: int = 0) -> List[LeaderboardEntry]:
        return list(self.entries[skip:skip + limit])

    def entry_for(self, user_id: str) -> Optional[LeaderboardEntry]:
        for entry in self.entries:
            if entry.user_id == user_id:
                return entry
        return None


@dataclass
class RefreshReport:
    """Result of refreshing every leaderboard scope."""

    published: List[str]
    failed: List[str]
    stale: List[str]
    cancelled: bool = False

    @property
    def outcome(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.failed:
            return "partial"
        return "success"

    def as_dict(self) -> dict:
        return {
            "published": len(self.published),
            "failed": len(self.failed),
            "stale": len(self.stale),
            "failed_scopes": list(self.failed),
            "outcome": self.outcome,
        }
