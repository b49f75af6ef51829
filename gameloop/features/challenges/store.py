"""
Challenge assignment store.

check-and-create is the idempotence primitive: `create_if_absent` returns
False when an assignment for (user_id, date) already exists, whether it was
found up front or lost to a concurrent insert (UNIQUE constraint).
"""
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date
from typing import Dict, List, Optional, Protocol, Tuple

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from gameloop.core.clock import ensure_aware
from gameloop.core.database import challenge_assignments, session_scope
from gameloop.models.challenge import ChallengeAssignment


class ChallengeStore(Protocol):
    def get_assignment(self, user_id: str, day: date) -> Optional[ChallengeAssignment]:
        ...

    def create_if_absent(self, assignment: ChallengeAssignment) -> bool:
        ...

    def history(self, user_id: str, limit: int) -> List[ChallengeAssignment]:
        ...

    def expire_before(self, cutoff: date) -> int:
        ...

    def update_progress(self, assignment: ChallengeAssignment) -> bool:
        ...

    def complete_if_pending(self, assignment: ChallengeAssignment) -> bool:
        ...


class InMemoryChallengeStore:
    def __init__(self):
        self._rows: Dict[Tuple[str, date], ChallengeAssignment] = {}
        self._lock = threading.Lock()

    def get_assignment(self, user_id: str, day: date) -> Optional[ChallengeAssignment]:
        with self._lock:
            row = self._rows.get((user_id, day))
            return replace(row) if row else None

    def create_if_absent(self, assignment: ChallengeAssignment) -> bool:
        key = (assignment.user_id, assignment.date)
        with self._lock:
            if key in self._rows:
                return False
            self._rows[key] = replace(assignment)
            return True

    def history(self, user_id: str, limit: int) -> List[ChallengeAssignment]:
        with self._lock:
            rows = [replace(row) for (uid, _), row in self._rows.items() if uid == user_id]
        rows.sort(key=lambda r: r.date, reverse=True)
        return rows[:limit]

    def expire_before(self, cutoff: date) -> int:
        expired = 0
        with self._lock:
            for row in self._rows.values():
                if row.date < cutoff and row.status == "pending":
                    row.status = "expired"
                    expired += 1
        return expired

    def update_progress(self, assignment: ChallengeAssignment) -> bool:
        with self._lock:
            row = self._rows.get((assignment.user_id, assignment.date))
            if row is None or row.status != "pending":
                return False
            row.progress = max(row.progress, assignment.progress)
            return True

    def complete_if_pending(self, assignment: ChallengeAssignment) -> bool:
        """Mark the row completed unless another caller already moved it off pending."""
        with self._lock:
            row = self._rows.get((assignment.user_id, assignment.date))
            if row is None or row.status != "pending":
                return False
            row.progress = assignment.progress
            row.status = "completed"
            row.completed_at = assignment.completed_at
            return True

    def all(self) -> List[ChallengeAssignment]:
        with self._lock:
            return [replace(row) for row in self._rows.values()]


def _row_to_assignment(row) -> ChallengeAssignment:
    return ChallengeAssignment(
        assignment_id=row.assignment_id,
        user_id=row.user_id,
        date=row.date,
        definition_id=row.definition_id,
        topic_id=row.topic_id,
        difficulty=row.difficulty,
        target_count=row.target_count,
        progress=row.progress,
        reward_points=row.reward_points,
        status=row.status,
        created_at=ensure_aware(row.created_at),
        completed_at=ensure_aware(row.completed_at) if row.completed_at else None,
    )


class SqlChallengeStore:
    """SQLAlchemy Core implementation backed by the challenge_assignments table."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def get_assignment(self, user_id: str, day: date) -> Optional[ChallengeAssignment]:
        stmt = select(challenge_assignments).where(
            and_(challenge_assignments.c.user_id == user_id, challenge_assignments.c.date == day)
        )
        with session_scope(self._session_factory) as session:
            row = session.execute(stmt).first()
        return _row_to_assignment(row) if row else None

    def create_if_absent(self, assignment: ChallengeAssignment) -> bool:
        values = {
            "assignment_id": assignment.assignment_id,
            "user_id": assignment.user_id,
            "date": assignment.date,
            "definition_id": assignment.definition_id,
            "topic_id": assignment.topic_id,
            "difficulty": assignment.difficulty,
            "target_count": assignment.target_count,
            "progress": assignment.progress,
            "reward_points": assignment.reward_points,
            "status": assignment.status,
            "created_at": assignment.created_at,
            "completed_at": assignment.completed_at,
        }
        try:
            with session_scope(self._session_factory) as session:
                session.execute(challenge_assignments.insert().values(**values))
            return True
        except IntegrityError:
            # UNIQUE(user_id, date) or primary key: someone else created it first
            return False

    def history(self, user_id: str, limit: int) -> List[ChallengeAssignment]:
        stmt = (
            select(challenge_assignments)
            .where(challenge_assignments.c.user_id == user_id)
            .order_by(challenge_assignments.c.date.desc())
            .limit(limit)
        )
        with session_scope(self._session_factory) as session:
            return [_row_to_assignment(row) for row in session.execute(stmt).fetchall()]

    def expire_before(self, cutoff: date) -> int:
        stmt = (
            update(challenge_assignments)
            .where(and_(challenge_assignments.c.date < cutoff, challenge_assignments.c.status == "pending"))
            .values(status="expired")
        )
        with session_scope(self._session_factory) as session:
            result = session.execute(stmt)
            return result.rowcount or 0

    def update_progress(self, assignment: ChallengeAssignment) -> bool:
        stmt = (
            update(challenge_assignments)
            .where(
                and_(
                    challenge_assignments.c.assignment_id == assignment.assignment_id,
                    challenge_assignments.c.status == "pending",
                    challenge_assignments.c.progress < assignment.progress,
                )
            )
            .values(progress=assignment.progress)
        )
        with session_scope(self._session_factory) as session:
            return session.execute(stmt).rowcount == 1

    def complete_if_pending(self, assignment: ChallengeAssignment) -> bool:
        stmt = (
            update(challenge_assignments)
            .where(
                and_(
                    challenge_assignments.c.assignment_id == assignment.assignment_id,
                    challenge_assignments.c.status == "pending",
                )
            )
            .values(
                progress=assignment.progress,
                status="completed",
                completed_at=assignment.completed_at,
            )
        )
        with session_scope(self._session_factory) as session:
            result = session.execute(stmt)
            return result.rowcount == 1
