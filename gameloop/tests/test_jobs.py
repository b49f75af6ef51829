import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from gameloop.core.clock import ManualClock
from gameloop.core.config import Settings
from gameloop.core.errors import SchedulerConfigError
from gameloop.features.challenges.policy import WeakestTopicPolicy
from gameloop.features.scheduler.jobs import CHALLENGE_JOB, LEADERBOARD_JOB, build_services
from gameloop.models.leaderboard import GLOBAL_SCOPE
from gameloop.tests.mocks import FailingUserStore, RecordingChallengeStore

UTC = timezone.utc
WAIT = 5


def _seed(user_store, clock):
    for uid, points in (("u1", 30), ("u2", 20), ("u3", 10)):
        user_store.add_user(uid, display_name=uid.upper(), points=points, achieved_at=clock.now())
        user_store.record_practice(uid, "arrays", at=clock.now() - timedelta(days=1), strength=0.3, solved=1)


def test_both_jobs_registered_with_configured_cadences(services):
    orch = services.orchestrator
    assert orch.job_names() == sorted([CHALLENGE_JOB, LEADERBOARD_JOB])
    assert orch.next_fire_time(CHALLENGE_JOB) == datetime(2024, 6, 2, tzinfo=UTC)
    assert orch.next_fire_time(LEADERBOARD_JOB) == datetime(2024, 6, 1, 12, 15, tzinfo=UTC)


def test_generation_job_runs_through_orchestrator(services, user_store, challenge_store, clock):
    _seed(user_store, clock)

    assert services.orchestrator.run_now(CHALLENGE_JOB)
    assert services.orchestrator.wait_idle(WAIT)
    assert services.orchestrator.run_now(CHALLENGE_JOB)
    assert services.orchestrator.wait_idle(WAIT)

    second, first = services.orchestrator.recent_runs(CHALLENGE_JOB)
    assert first.outcome == "success"
    assert first.summary["created"] == 3
    assert second.summary["created"] == 0
    assert second.summary["skipped"] == 3
    assert {a.date for a in challenge_store.all()} == {date(2024, 6, 1)}


def test_refresh_job_publishes_boards(services, user_store, cache, clock):
    _seed(user_store, clock)

    services.orchestrator.run_now(LEADERBOARD_JOB)
    assert services.orchestrator.wait_idle(WAIT)

    run = services.orchestrator.recent_runs(LEADERBOARD_JOB, 1)[0]
    assert run.outcome == "success"
    assert [e.user_id for e in cache.get_current(GLOBAL_SCOPE).entries] == ["u1", "u2", "u3"]
    assert cache.get_current("topic:arrays") is not None


def test_user_fetch_failure_reports_failure_without_writes(test_settings, cache):
    clock = ManualClock(datetime(2024, 6, 1, 0, 0, 1, tzinfo=UTC))
    users = FailingUserStore()
    _seed(users, clock)
    users.fail_active = True
    store = RecordingChallengeStore()
    services = build_services(test_settings, clock=clock, user_store=users, challenge_store=store, cache=cache)
    try:
        services.orchestrator.run_now(CHALLENGE_JOB)
        assert services.orchestrator.wait_idle(WAIT)
    finally:
        services.orchestrator.stop(wait=False)

    run = services.orchestrator.recent_runs(CHALLENGE_JOB, 1)[0]
    assert run.outcome == "failure"
    assert "ActiveUserFetchError" in run.error
    assert store.writes == 0


def test_daily_cadence_fires_generation_at_reference_midnight(services, user_store, challenge_store, clock):
    _seed(user_store, clock)
    clock.set(datetime(2024, 6, 2, 0, 0, 30, tzinfo=UTC))

    fired = services.orchestrator.tick()
    assert services.orchestrator.wait_idle(WAIT)

    assert CHALLENGE_JOB in fired
    assert {a.date for a in challenge_store.all()} == {date(2024, 6, 2)}


def test_weakest_topic_policy_is_the_default(user_store, challenge_store, cache, clock):
    cfg = Settings(_env_file=None, DATABASE_URL=None)
    services = build_services(cfg, clock=clock, user_store=user_store, challenge_store=challenge_store, cache=cache)
    try:
        assert isinstance(services.generator._policy, WeakestTopicPolicy)
    finally:
        services.orchestrator.stop(wait=False)


def test_invalid_cadence_fails_wiring(user_store, challenge_store, cache, clock):
    cfg = Settings(_env_file=None, DATABASE_URL=None, LEADERBOARD_CADENCE="every blue moon")
    with pytest.raises(SchedulerConfigError):
        build_services(cfg, clock=clock, user_store=user_store, challenge_store=challenge_store, cache=cache)


def test_queued_generation_uses_the_trigger_day(user_store, challenge_store, cache, clock):
    cfg = Settings(_env_file=None, DATABASE_URL=None, CHALLENGE_POLICY="rotation", SCHEDULER_MAX_WORKERS=1)
    services = build_services(cfg, clock=clock, user_store=user_store, challenge_store=challenge_store, cache=cache)
    orch = services.orchestrator
    _seed(user_store, clock)
    busy = threading.Event()
    release = threading.Event()

    def hold_the_worker(ctx):
        busy.set()
        release.wait(WAIT)

    orch.schedule_recurring("blocker", "0 0 1 1 *", hold_the_worker)
    try:
        orch.run_now("blocker")
        assert busy.wait(WAIT)
        clock.set(datetime(2024, 6, 2, 0, 0, 30, tzinfo=UTC))
        assert CHALLENGE_JOB in orch.tick()

        # the queued run only starts after midnight of the following day
        clock.set(datetime(2024, 6, 3, 0, 0, 10, tzinfo=UTC))
        release.set()
        assert orch.wait_idle(WAIT)
    finally:
        release.set()
        orch.stop(wait=False)

    assert {a.date for a in challenge_store.all()} == {date(2024, 6, 2)}


def test_one_off_worker_run_does_not_fire_due_cadences(services, user_store, clock, monkeypatch):
    from gameloop.workers import scheduler_worker

    _seed(user_store, clock)
    clock.set(datetime(2024, 6, 2, 0, 0, 30, tzinfo=UTC))
    monkeypatch.setattr(scheduler_worker, "build_services", lambda cfg: services)

    assert scheduler_worker.run_once(LEADERBOARD_JOB) == 0

    assert services.orchestrator.recent_runs(LEADERBOARD_JOB, 1)[0].trigger == "manual"
    assert services.orchestrator.recent_runs(CHALLENGE_JOB) == []
