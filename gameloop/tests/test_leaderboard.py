import threading
from datetime import datetime, timedelta, timezone

import pytest

from gameloop.core.clock import ManualClock
from gameloop.core.errors import NotFoundError, RunCancelledError, ScoreSourceError, ValidationError
from gameloop.core.metrics import leaderboard_entries, leaderboard_publish_total
from gameloop.features.leaderboard.aggregator import LeaderboardAggregator, LeaderboardReader, rank_scores
from gameloop.features.leaderboard.cache import InMemoryLeaderboardCache, RedisLeaderboardCache
from gameloop.models.leaderboard import GLOBAL_SCOPE, LeaderboardEntry, LeaderboardSnapshot, ScoreRecord, topic_scope
from gameloop.models.scheduler_run import RunContext
from gameloop.tests.mocks import FailingUserStore, FakeRedis

UTC = timezone.utc
T0 = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _store():
    users = FailingUserStore()
    users.add_user("A", points=100, achieved_at=T0 - timedelta(hours=2))
    users.add_user("B", points=100, achieved_at=T0 - timedelta(hours=1))
    users.add_user("C", points=80, achieved_at=T0 - timedelta(hours=3))
    users.record_practice("A", "graphs", at=T0, strength=0.5, solved=4)
    users.record_practice("C", "graphs", at=T0, strength=0.7, solved=2)
    users.record_practice("B", "trees", at=T0, strength=0.2, solved=1)
    return users


def _aggregator(users, cache=None, clock=None, **kwargs):
    return LeaderboardAggregator(users, cache or InMemoryLeaderboardCache(), clock=clock or ManualClock(T0), **kwargs)


def test_equal_scores_ranked_by_who_got_there_first():
    snapshot = _aggregator(_store()).refresh_leaderboard()
    assert [(e.user_id, e.rank) for e in snapshot.entries] == [("A", 1), ("B", 2), ("C", 3)]


def test_ranks_are_contiguous_and_deterministic():
    records = [
        ScoreRecord(user_id="z", score=50.0),
        ScoreRecord(user_id="y", score=50.0),
        ScoreRecord(user_id="x", score=50.0, achieved_at=T0),
        ScoreRecord(user_id="w", score=70.0),
    ]
    entries = rank_scores(records, T0)
    again = rank_scores(list(reversed(records)), T0)

    assert [e.rank for e in entries] == [1, 2, 3, 4]
    # known timestamps beat unknown ones, user_id settles the rest
    assert [e.user_id for e in entries] == ["w", "x", "y", "z"]
    assert entries == again


def test_empty_board_is_published():
    cache = InMemoryLeaderboardCache()
    snapshot = _aggregator(FailingUserStore(), cache).refresh_leaderboard()
    assert snapshot.entries == ()
    assert cache.get_current(GLOBAL_SCOPE).version == snapshot.version


def test_refresh_swaps_in_new_snapshot_and_counts():
    users = _store()
    cache = InMemoryLeaderboardCache()
    clock = ManualClock(T0)
    agg = _aggregator(users, cache, clock)

    first = agg.refresh_leaderboard()
    users.add_points("C", 50, T0)
    clock.advance(minutes=15)
    second = agg.refresh_leaderboard()

    current = cache.get_current(GLOBAL_SCOPE)
    assert current.version == second.version != first.version
    assert current.entries[0].user_id == "C"
    assert leaderboard_publish_total.value({"scope_kind": "global", "result": "published"}) == 2
    assert leaderboard_entries.value({"scope": "global"}) == 3


def test_score_failure_keeps_previous_snapshot():
    users = _store()
    cache = InMemoryLeaderboardCache()
    clock = ManualClock(T0)
    agg = _aggregator(users, cache, clock)
    before = agg.refresh_leaderboard()

    users.fail_scores = True
    clock.advance(minutes=15)
    with pytest.raises(ScoreSourceError):
        agg.refresh_leaderboard()

    assert cache.get_current(GLOBAL_SCOPE) == before
    assert leaderboard_publish_total.value({"scope_kind": "global", "result": "failed"}) == 1


def test_cancelled_refresh_publishes_nothing():
    cache = InMemoryLeaderboardCache()
    ctx = RunContext(run_id="r", task="leaderboard_refresh", started_at=T0)
    ctx.cancelled.set()

    with pytest.raises(RunCancelledError):
        _aggregator(_store(), cache).refresh_leaderboard(ctx=ctx)
    assert cache.get_current(GLOBAL_SCOPE) is None


def test_refresh_all_builds_global_and_topic_boards():
    cache = InMemoryLeaderboardCache()
    report = _aggregator(_store(), cache).refresh_all()

    assert report.outcome == "success"
    assert report.published == [GLOBAL_SCOPE, topic_scope("graphs"), topic_scope("trees")]
    graphs = cache.get_current(topic_scope("graphs"))
    assert [(e.user_id, e.rank, e.questions_solved) for e in graphs.entries] == [("C", 1, 2), ("A", 2, 4)]


def test_topic_failure_is_isolated():
    users = _store()
    users.fail_topics = {"graphs"}
    cache = InMemoryLeaderboardCache()

    report = _aggregator(users, cache).refresh_all()

    assert report.outcome == "partial"
    assert report.failed == [topic_scope("graphs")]
    assert cache.get_current(topic_scope("trees")) is not None
    assert report.as_dict()["failed_scopes"] == ["topic:graphs"]


def test_global_failure_aborts_refresh_all():
    users = _store()
    users.fail_scores = True
    cache = InMemoryLeaderboardCache()

    with pytest.raises(ScoreSourceError):
        _aggregator(users, cache).refresh_all()
    assert cache.scopes() == []


def test_max_entries_truncates_board():
    snapshot = _aggregator(_store(), max_entries=2).refresh_leaderboard()
    assert [e.user_id for e in snapshot.entries] == ["A", "B"]


def test_cache_refuses_older_snapshot():
    cache = InMemoryLeaderboardCache()
    newer = LeaderboardSnapshot(scope=GLOBAL_SCOPE, version="v2", computed_at=T0)
    older = LeaderboardSnapshot(scope=GLOBAL_SCOPE, version="v1", computed_at=T0 - timedelta(minutes=1))

    assert cache.publish(newer) is True
    assert cache.publish(older) is False
    assert cache.get_current(GLOBAL_SCOPE).version == "v2"


def _entries(count, computed_at):
    return tuple(
        LeaderboardEntry(user_id=f"u{i}", display_name=f"U{i}", rank=i + 1, score=float(count - i), computed_at=computed_at)
        for i in range(count)
    )


def test_readers_never_see_partial_snapshots():
    cache = InMemoryLeaderboardCache()
    cache.publish(LeaderboardSnapshot(scope=GLOBAL_SCOPE, version="1", computed_at=T0, entries=_entries(1, T0)))
    errors = []
    done = threading.Event()

    def publisher():
        for n in range(2, 200):
            at = T0 + timedelta(seconds=n)
            cache.publish(LeaderboardSnapshot(scope=GLOBAL_SCOPE, version=str(n), computed_at=at, entries=_entries(n, at)))
        done.set()

    def reader():
        while not done.is_set():
            snap = cache.get_current(GLOBAL_SCOPE)
            if len(snap.entries) != int(snap.version):
                errors.append(snap.version)
            if any(e.computed_at != snap.computed_at for e in snap.entries):
                errors.append(snap.version)

    threads = [threading.Thread(target=reader) for _ in range(4)] + [threading.Thread(target=publisher)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert cache.get_current(GLOBAL_SCOPE).version == "199"


def test_reader_pages_and_finds_user_rank():
    cache = InMemoryLeaderboardCache()
    _aggregator(_store(), cache).refresh_all()
    reader = LeaderboardReader(cache)

    board = reader.get_board(GLOBAL_SCOPE, limit=2, skip=1)
    assert board["total"] == 3
    assert [e.user_id for e in board["entries"]] == ["B", "C"]
    assert reader.get_user_rank("C").rank == 3
    assert reader.get_user_rank("A", topic_scope("graphs")).rank == 2
    with pytest.raises(NotFoundError):
        reader.get_user_rank("B", topic_scope("graphs"))
    with pytest.raises(ValidationError):
        reader.get_board(GLOBAL_SCOPE, limit=0)


def test_reader_before_first_publish_is_empty():
    board = LeaderboardReader(InMemoryLeaderboardCache()).get_board()
    assert board["version"] is None
    assert board["entries"] == []


def test_redis_cache_swaps_pointer_and_keeps_old_version_for_grace():
    redis = FakeRedis()
    cache = RedisLeaderboardCache(redis, prefix="test:lb", grace_seconds=30)
    first = LeaderboardSnapshot(scope=GLOBAL_SCOPE, version="v1", computed_at=T0, entries=_entries(2, T0))
    later = T0 + timedelta(minutes=15)
    second = LeaderboardSnapshot(scope=GLOBAL_SCOPE, version="v2", computed_at=later, entries=_entries(3, later))

    assert cache.publish(first) is True
    assert cache.publish(second) is True

    current = cache.get_current(GLOBAL_SCOPE)
    assert current == second
    assert redis.data["test:lb:global:current"] == b"v2"
    assert "test:lb:global:v1" in redis.data
    assert redis.ttls["test:lb:global:v1"] == 30


def test_redis_cache_refuses_stale_and_retries_on_conflict():
    redis = FakeRedis(conflicts=1)
    cache = RedisLeaderboardCache(redis, prefix="test:lb")
    newer = LeaderboardSnapshot(scope=GLOBAL_SCOPE, version="v2", computed_at=T0)
    older = LeaderboardSnapshot(scope=GLOBAL_SCOPE, version="v1", computed_at=T0 - timedelta(minutes=5))

    assert cache.publish(newer) is True
    assert cache.publish(older) is False
    assert cache.get_current(GLOBAL_SCOPE).version == "v2"
    assert cache.get_current(topic_scope("graphs")) is None


def test_aggregator_publishes_through_redis_cache():
    cache = RedisLeaderboardCache(FakeRedis(), prefix="test:lb")
    snapshot = _aggregator(_store(), cache).refresh_leaderboard()
    assert cache.get_current(GLOBAL_SCOPE).entries == snapshot.entries
