"""
Daily challenge generation.

One assignment per active user per reference day. The (user_id, date) pair is
the idempotence key, so running the batch twice for the same day creates
nothing the second time.

Public API
----------
ChallengeGenerator.reference_date(at)                     -> date
ChallengeGenerator.generate_for_all_users(day, ctx)       -> GenerationReport
ChallengeGenerator.get_today(user_id)                     -> ChallengeAssignment
ChallengeGenerator.get_history(user_id, limit)            -> list[ChallengeAssignment]
ChallengeGenerator.record_progress(user_id, topic, diff)  -> ChallengeAssignment | None
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import List, Optional, Sequence, Tuple

from gameloop.core.clock import Clock, ensure_aware
from gameloop.core.errors import ActiveUserFetchError, ValidationError
from gameloop.core.metrics import challenge_assignments_total
from gameloop.features.challenges.catalog import DEFAULT_CATALOG
from gameloop.features.challenges.policy import RotationPolicy, SelectionPolicy
from gameloop.features.challenges.store import ChallengeStore
from gameloop.features.users.store import UserStore
from gameloop.models.challenge import ChallengeAssignment, ChallengeDefinition, GenerationReport
from gameloop.models.scheduler_run import RunContext

logger = logging.getLogger("gameloop.challenges")

MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 7


class ChallengeGenerator:
    """Creates and serves daily challenge assignments."""

    def __init__(
        self,
        user_store: UserStore,
        challenge_store: ChallengeStore,
        *,
        clock: Clock,
        reference_tz: tzinfo,
        policy: Optional[SelectionPolicy] = None,
        catalog: Sequence[ChallengeDefinition] = DEFAULT_CATALOG,
        active_window_days: int = 30,
    ):
        if not catalog:
            raise ValueError("Challenge catalog must not be empty")
        self._users = user_store
        self._store = challenge_store
        self._clock = clock
        self._tz = reference_tz
        self._policy = policy or RotationPolicy()
        self._catalog = tuple(catalog)
        self._active_window_days = active_window_days

    def reference_date(self, at: Optional[datetime] = None) -> date:
        """Calendar day of `at` in the reference timezone."""
        moment = ensure_aware(at or self._clock.now())
        return moment.astimezone(self._tz).date()

    def active_since(self, reference_date: date) -> datetime:
        start_of_day = datetime.combine(reference_date, time.min, tzinfo=self._tz)
        return start_of_day - timedelta(days=self._active_window_days)

    # Batch ------------------------------------------------------------
    def generate_for_all_users(
        self,
        reference_date: Optional[date] = None,
        ctx: Optional[RunContext] = None,
    ) -> GenerationReport:
        day = reference_date or self.reference_date()
        report = GenerationReport(reference_date=day)

        try:
            user_ids = self._users.list_active_user_ids(self.active_since(day))
        except Exception as exc:
            raise ActiveUserFetchError(f"Could not list active users: {exc}") from exc

        try:
            report.expired = self._store.expire_before(day)
        except Exception:
            logger.exception("expiring earlier assignments failed", extra={"reference_date": day.isoformat()})

        for user_id in user_ids:
            if ctx is not None and ctx.is_cancelled():
                report.cancelled = True
                logger.warning(
                    "challenge generation cancelled",
                    extra={"task": ctx.task, "remaining": len(user_ids) - report.attempted},
                )
                break
            report.attempted += 1
            try:
                created, _ = self._assign(user_id, day)
            except Exception:
                report.failed += 1
                report.failed_user_ids.append(user_id)
                challenge_assignments_total.inc(labels={"result": "failed"})
                logger.exception("challenge generation failed for user", extra={"user_id": user_id})
                continue
            if created:
                report.created += 1
                challenge_assignments_total.inc(labels={"result": "created"})
            else:
                report.skipped_existing += 1
                challenge_assignments_total.inc(labels={"result": "skipped"})

        logger.info(
            "challenge generation finished",
            extra={
                "reference_date": day.isoformat(),
                "attempted": report.attempted,
                "created_count": report.created,
                "skipped_count": report.skipped_existing,
                "failed_count": report.failed,
                "expired_count": report.expired,
            },
        )
        return report

    def _assign(self, user_id: str, day: date) -> Tuple[bool, ChallengeAssignment]:
        existing = self._store.get_assignment(user_id, day)
        if existing is not None:
            return False, existing

        recent = self._store.history(user_id, 1)
        definition = self._policy.select(user_id, day, self._catalog, recent)
        assignment = ChallengeAssignment.from_definition(
            user_id=user_id,
            day=day,
            definition=definition,
            created_at=self._clock.now(),
        )
        if self._store.create_if_absent(assignment):
            return True, assignment

        # Lost a race with another writer; theirs is the assignment of record
        winner = self._store.get_assignment(user_id, day)
        return False, winner or assignment

    # Read path --------------------------------------------------------
    def get_today(self, user_id: str) -> ChallengeAssignment:
        """Today's assignment, created on demand if the batch has not reached the user yet."""
        _, assignment = self._assign(user_id, self.reference_date())
        return assignment

    def get_history(self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[ChallengeAssignment]:
        if limit < 1 or limit > MAX_HISTORY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        return self._store.history(user_id, limit)

    def record_progress(
        self,
        user_id: str,
        topic_id: str,
        difficulty: str,
        *,
        solved: bool = True,
    ) -> Optional[ChallengeAssignment]:
        """Count one solved question toward today's matching challenge.

        Completing the challenge credits its reward points exactly once.
        """
        if not solved:
            return None
        assignment = self._store.get_assignment(user_id, self.reference_date())
        if assignment is None or assignment.status != "pending":
            return assignment
        if assignment.topic_id != topic_id or assignment.difficulty != difficulty:
            return assignment

        assignment.progress = min(assignment.progress + 1, assignment.target_count)
        if assignment.progress < assignment.target_count:
            self._store.update_progress(assignment)
            return assignment

        now = self._clock.now()
        assignment.status = "completed"
        assignment.completed_at = now
        if not self._store.complete_if_pending(assignment):
            # Another call completed it first and already credited the reward
            return self._store.get_assignment(user_id, assignment.date)
        self._users.add_points(user_id, assignment.reward_points, now)
        logger.info(
            "challenge completed",
            extra={"user_id": user_id, "reward_points": assignment.reward_points},
        )
        return assignment
