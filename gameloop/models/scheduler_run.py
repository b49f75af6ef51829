from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

RunOutcome = Literal["running", "success", "partial", "failure", "timeout", "cancelled"]
RunTrigger = Literal["cadence", "manual"]


@dataclass
class RunContext:
    """Handed to a task for the duration of one run."""

    run_id: str
    task: str
    started_at: datetime
    deadline: Optional[datetime] = None
    cancelled: threading.Event = field(default_factory=threading.Event)

    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()


@dataclass
class RunRecord:
    """Lifecycle of one task execution, kept for observability only."""

    run_id: str
    task: str
    trigger: RunTrigger
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    outcome: RunOutcome = "running"
    error: Optional[str] = None
    summary: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "task": self.task,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome,
            "error": self.error,
            "summary": dict(self.summary),
        }
