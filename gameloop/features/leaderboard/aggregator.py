"""
Leaderboard aggregation.

Ranking policy
--------------
Scores sort descending. Ties go to whoever reached the score first
(earliest `achieved_at`; unknown sorts last), then to user_id so identical
inputs always produce identical boards. Ranks are contiguous and distinct,
starting at 1: two users on the same score never share a rank.

Public API
----------
rank_scores(records, computed_at)                -> tuple[LeaderboardEntry]
LeaderboardAggregator.refresh_leaderboard(scope) -> LeaderboardSnapshot
LeaderboardAggregator.refresh_all(ctx)           -> RefreshReport
LeaderboardReader.get_board / get_user_rank
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from uuid import uuid4

from gameloop.core.clock import Clock
from gameloop.core.errors import NotFoundError, RunCancelledError, ScoreSourceError, ValidationError
from gameloop.core.metrics import leaderboard_entries, leaderboard_publish_total, scope_kind
from gameloop.features.leaderboard.cache import LeaderboardCache
from gameloop.features.users.store import UserStore
from gameloop.models.leaderboard import (
    GLOBAL_SCOPE,
    LeaderboardEntry,
    LeaderboardSnapshot,
    RefreshReport,
    ScoreRecord,
    topic_scope,
)
from gameloop.models.scheduler_run import RunContext

logger = logging.getLogger("gameloop.leaderboard")

RANKING_POLICY = "distinct"  # equal scores get distinct ranks, tie-break decides order
MAX_PAGE_SIZE = 100


def _sort_key(record: ScoreRecord) -> Tuple:
    achieved = record.achieved_at
    return (
        -record.score,
        achieved is None,
        achieved.timestamp() if achieved is not None else 0.0,
        record.user_id,
    )


def rank_scores(records: Iterable[ScoreRecord], computed_at: datetime) -> Tuple[LeaderboardEntry, ...]:
    """Pure ranking: same records in, same entries out."""
    ordered = sorted(records, key=_sort_key)
    return tuple(
        LeaderboardEntry(
            user_id=record.user_id,
            display_name=record.display_name or f"user_{record.user_id[:6]}",
            rank=position,
            score=record.score,
            questions_solved=max(record.questions_solved, 0),
            streak=max(record.streak, 0),
            badges=max(record.badges, 0),
            computed_at=computed_at,
        )
        for position, record in enumerate(ordered, start=1)
    )


def new_version(computed_at: datetime) -> str:
    return f"{computed_at.strftime('%Y%m%dT%H%M%S%f')}-{uuid4().hex[:8]}"


class LeaderboardAggregator:
    """Recomputes rankings and publishes them as whole snapshots."""

    def __init__(
        self,
        user_store: UserStore,
        cache: LeaderboardCache,
        *,
        clock: Clock,
        max_entries: Optional[int] = None,
    ):
        self._users = user_store
        self._cache = cache
        self._clock = clock
        self._max_entries = max_entries or None

    def _read_scores(self, scope: str) -> List[ScoreRecord]:
        try:
            if scope == GLOBAL_SCOPE:
                return list(self._users.get_scores())
            if scope.startswith("topic:"):
                return list(self._users.get_topic_scores(scope[len("topic:"):]))
        except Exception as exc:
            raise ScoreSourceError(f"Could not read scores for {scope}: {exc}") from exc
        raise ValidationError(f"Unknown leaderboard scope: {scope}")

    def build_snapshot(self, scope: str = GLOBAL_SCOPE) -> LeaderboardSnapshot:
        records = self._read_scores(scope)
        computed_at = self._clock.now()
        entries = rank_scores(records, computed_at)
        if self._max_entries:
            entries = entries[: self._max_entries]
        return LeaderboardSnapshot(
            scope=scope,
            version=new_version(computed_at),
            computed_at=computed_at,
            entries=entries,
        )

    def refresh_leaderboard(
        self,
        scope: str = GLOBAL_SCOPE,
        ctx: Optional[RunContext] = None,
    ) -> LeaderboardSnapshot:
        """Recompute one scope and swap it in.

        Raises ScoreSourceError (current snapshot untouched) when scores
        cannot be read, RunCancelledError when the run was cancelled before
        the swap.
        """
        try:
            snapshot = self.build_snapshot(scope)
        except ScoreSourceError:
            leaderboard_publish_total.inc(labels={"scope_kind": scope_kind(scope), "result": "failed"})
            raise

        if ctx is not None and ctx.is_cancelled():
            leaderboard_publish_total.inc(labels={"scope_kind": scope_kind(scope), "result": "discarded"})
            raise RunCancelledError(f"Refresh of {scope} cancelled before publish")

        if self._cache.publish(snapshot):
            leaderboard_publish_total.inc(labels={"scope_kind": scope_kind(scope), "result": "published"})
            leaderboard_entries.set(len(snapshot.entries), labels={"scope": scope})
        else:
            leaderboard_publish_total.inc(labels={"scope_kind": scope_kind(scope), "result": "stale"})
            logger.warning("stale leaderboard snapshot not published", extra={"scope": scope})
        return snapshot

    def refresh_all(self, ctx: Optional[RunContext] = None) -> RefreshReport:
        """Global board first, then one board per topic.

        A global failure aborts the whole refresh; a topic failure is
        isolated to that topic.
        """
        report = RefreshReport(published=[], failed=[], stale=[])
        scopes = [GLOBAL_SCOPE]

        snapshot = self.refresh_leaderboard(GLOBAL_SCOPE, ctx)
        self._record(report, snapshot)

        try:
            topic_ids = self._users.list_topic_ids()
        except Exception as exc:
            raise ScoreSourceError(f"Could not list topics: {exc}") from exc
        scopes.extend(topic_scope(topic_id) for topic_id in topic_ids)

        for scope in scopes[1:]:
            if ctx is not None and ctx.is_cancelled():
                report.cancelled = True
                break
            try:
                snapshot = self.refresh_leaderboard(scope, ctx)
            except RunCancelledError:
                report.cancelled = True
                break
            except Exception:
                report.failed.append(scope)
                logger.exception("topic leaderboard refresh failed", extra={"scope": scope})
                continue
            self._record(report, snapshot)

        logger.info(
            "leaderboard refresh finished",
            extra={
                "published_count": len(report.published),
                "failed_count": len(report.failed),
                "stale_count": len(report.stale),
            },
        )
        return report

    def _record(self, report: RefreshReport, snapshot: LeaderboardSnapshot) -> None:
        current = self._cache.get_current(snapshot.scope)
        if current is not None and current.version == snapshot.version:
            report.published.append(snapshot.scope)
        else:
            report.stale.append(snapshot.scope)


class LeaderboardReader:
    """Read side: serves only the last fully published snapshot."""

    def __init__(self, cache: LeaderboardCache):
        self._cache = cache

    def current(self, scope: str = GLOBAL_SCOPE) -> Optional[LeaderboardSnapshot]:
        return self._cache.get_current(scope)

    def get_board(self, scope: str = GLOBAL_SCOPE, limit: int = 50, skip: int = 0) -> dict:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if skip < 0:
            raise ValidationError("skip must be >= 0")
        snapshot = self._cache.get_current(scope)
        if snapshot is None:
            return {"scope": scope, "version": None, "computed_at": None, "total": 0, "entries": []}
        return {
            "scope": scope,
            "version": snapshot.version,
            "computed_at": snapshot.computed_at,
            "total": len(snapshot.entries),
            "entries": snapshot.page(limit, skip),
        }

    def get_user_rank(self, user_id: str, scope: str = GLOBAL_SCOPE) -> LeaderboardEntry:
        snapshot = self._cache.get_current(scope)
        entry = snapshot.entry_for(user_id) if snapshot is not None else None
        if entry is None:
            raise NotFoundError(f"User {user_id} is not ranked on {scope}")
        return entry
