"""
User / score store.

The source of truth for who is active and what everyone's score is. The
scheduler core only reads from it, apart from crediting challenge rewards.

- InMemoryUserStore: default when DATABASE_URL is not set (dev, tests).
- SqlUserStore: SQLAlchemy Core queries over app_users, topic_progress and
  practice_logs.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from sqlalchemy import and_, func, select, update

from gameloop.core.clock import ensure_aware
from gameloop.core.database import practice_logs, session_scope, topic_progress, users
from gameloop.models.leaderboard import ScoreRecord


class UserStore(Protocol):
    def list_active_user_ids(self, since: datetime) -> List[str]:
        ...

    def get_scores(self) -> List[ScoreRecord]:
        ...

    def list_topic_ids(self) -> List[str]:
        ...

    def get_topic_scores(self, topic_id: str) -> List[ScoreRecord]:
        ...

    def get_topic_strengths(self, user_id: str) -> Dict[str, float]:
        ...

    def add_points(self, user_id: str, points: int, at: datetime) -> None:
        ...


@dataclass
class _UserRow:
    user_id: str
    display_name: Optional[str]
    status: str = "active"
    total_points: int = 0
    points_updated_at: Optional[datetime] = None
    current_streak: int = 0
    badges_earned: int = 0
    topics: Dict[str, Tuple[float, int, datetime]] = field(default_factory=dict)


class InMemoryUserStore:
    """Thread-safe in-memory implementation."""

    def __init__(self):
        self._users: Dict[str, _UserRow] = {}
        self._practice: List[Tuple[str, str, datetime]] = []
        self._lock = threading.Lock()

    # Seeding helpers --------------------------------------------------
    def add_user(
        self,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        points: int = 0,
        achieved_at: Optional[datetime] = None,
        streak: int = 0,
        badges: int = 0,
        status: str = "active",
    ) -> None:
        with self._lock:
            self._users[user_id] = _UserRow(
                user_id=user_id,
                display_name=display_name,
                status=status,
                total_points=points,
                points_updated_at=ensure_aware(achieved_at) if achieved_at else None,
                current_streak=streak,
                badges_earned=badges,
            )

    def record_practice(
        self,
        user_id: str,
        topic_id: str,
        *,
        at: datetime,
        strength: Optional[float] = None,
        solved: int = 0,
    ) -> None:
        at = ensure_aware(at)
        with self._lock:
            row = self._users.setdefault(user_id, _UserRow(user_id=user_id, display_name=None))
            self._practice.append((user_id, topic_id, at))
            prev_strength, prev_solved, _ = row.topics.get(topic_id, (0.0, 0, at))
            row.topics[topic_id] = (
                prev_strength if strength is None else float(strength),
                prev_solved + solved,
                at,
            )

    # UserStore --------------------------------------------------------
    def list_active_user_ids(self, since: datetime) -> List[str]:
        since = ensure_aware(since)
        with self._lock:
            ids = {
                uid for uid, _, at in self._practice
                if at >= since and self._users.get(uid, _UserRow(uid, None)).status == "active"
            }
        return sorted(ids)

    def get_scores(self) -> List[ScoreRecord]:
        with self._lock:
            return [
                ScoreRecord(
                    user_id=row.user_id,
                    display_name=row.display_name,
                    score=float(row.total_points),
                    achieved_at=row.points_updated_at,
                    questions_solved=sum(solved for _, solved, _ in row.topics.values()),
                    streak=row.current_streak,
                    badges=row.badges_earned,
                )
                for row in self._users.values()
                if row.status == "active"
            ]

    def list_topic_ids(self) -> List[str]:
        with self._lock:
            return sorted({topic for row in self._users.values() for topic in row.topics})

    def get_topic_scores(self, topic_id: str) -> List[ScoreRecord]:
        with self._lock:
            records = []
            for row in self._users.values():
                if row.status != "active" or topic_id not in row.topics:
                    continue
                strength, solved, updated_at = row.topics[topic_id]
                records.append(ScoreRecord(
                    user_id=row.user_id,
                    display_name=row.display_name,
                    score=strength,
                    achieved_at=updated_at,
                    questions_solved=solved,
                    streak=row.current_streak,
                    badges=row.badges_earned,
                ))
            return records

    def get_topic_strengths(self, user_id: str) -> Dict[str, float]:
        with self._lock:
            row = self._users.get(user_id)
            if row is None:
                return {}
            return {topic: values[0] for topic, values in row.topics.items()}

    def add_points(self, user_id: str, points: int, at: datetime) -> None:
        with self._lock:
            row = self._users.setdefault(user_id, _UserRow(user_id=user_id, display_name=None))
            row.total_points += int(points)
            row.points_updated_at = ensure_aware(at)


class SqlUserStore:
    """SQLAlchemy Core implementation over app_users / topic_progress / practice_logs."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def list_active_user_ids(self, since: datetime) -> List[str]:
        stmt = (
            select(practice_logs.c.user_id)
            .select_from(practice_logs.join(users, users.c.user_id == practice_logs.c.user_id))
            .where(and_(practice_logs.c.practiced_at >= since, users.c.status == "active"))
            .distinct()
            .order_by(practice_logs.c.user_id)
        )
        with session_scope(self._session_factory) as session:
            return [row[0] for row in session.execute(stmt).fetchall()]

    def get_scores(self) -> List[ScoreRecord]:
        solved = (
            select(
                topic_progress.c.user_id,
                func.coalesce(func.sum(topic_progress.c.questions_solved), 0).label("solved"),
            )
            .group_by(topic_progress.c.user_id)
            .subquery()
        )
        stmt = (
            select(
                users.c.user_id,
                users.c.display_name,
                users.c.total_points,
                users.c.points_updated_at,
                users.c.current_streak,
                users.c.badges_earned,
                func.coalesce(solved.c.solved, 0),
            )
            .select_from(users.outerjoin(solved, solved.c.user_id == users.c.user_id))
            .where(users.c.status == "active")
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).fetchall()
        return [
            ScoreRecord(
                user_id=row[0],
                display_name=row[1],
                score=float(row[2] or 0),
                achieved_at=ensure_aware(row[3]) if row[3] else None,
                streak=int(row[4] or 0),
                badges=int(row[5] or 0),
                questions_solved=int(row[6] or 0),
            )
            for row in rows
        ]

    def list_topic_ids(self) -> List[str]:
        stmt = select(topic_progress.c.topic_id).distinct().order_by(topic_progress.c.topic_id)
        with session_scope(self._session_factory) as session:
            return [row[0] for row in session.execute(stmt).fetchall()]

    def get_topic_scores(self, topic_id: str) -> List[ScoreRecord]:
        stmt = (
            select(
                topic_progress.c.user_id,
                users.c.display_name,
                topic_progress.c.strength_score,
                topic_progress.c.updated_at,
                topic_progress.c.questions_solved,
                users.c.current_streak,
                users.c.badges_earned,
            )
            .select_from(topic_progress.join(users, users.c.user_id == topic_progress.c.user_id))
            .where(and_(topic_progress.c.topic_id == topic_id, users.c.status == "active"))
        )
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).fetchall()
        return [
            ScoreRecord(
                user_id=row[0],
                display_name=row[1],
                score=float(row[2] or 0),
                achieved_at=ensure_aware(row[3]) if row[3] else None,
                questions_solved=int(row[4] or 0),
                streak=int(row[5] or 0),
                badges=int(row[6] or 0),
            )
            for row in rows
        ]

    def get_topic_strengths(self, user_id: str) -> Dict[str, float]:
        stmt = select(topic_progress.c.topic_id, topic_progress.c.strength_score).where(
            topic_progress.c.user_id == user_id
        )
        with session_scope(self._session_factory) as session:
            return {row[0]: float(row[1] or 0) for row in session.execute(stmt).fetchall()}

    def add_points(self, user_id: str, points: int, at: datetime) -> None:
        stmt = (
            update(users)
            .where(users.c.user_id == user_id)
            .values(total_points=users.c.total_points + int(points), points_updated_at=at)
        )
        with session_scope(self._session_factory) as session:
            session.execute(stmt)
