"""
Wiring for the batch engine.

build_services() assembles stores, cache, generator, aggregator and the
orchestrator from Settings; register_jobs() binds the two recurring tasks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from gameloop.core.clock import Clock, SystemClock
from gameloop.core.config import Settings, settings
from gameloop.core.database import create_all_tables, get_session_factory, init_engine
from gameloop.features.challenges.generator import ChallengeGenerator
from gameloop.features.challenges.policy import RotationPolicy, WeakestTopicPolicy
from gameloop.features.challenges.store import ChallengeStore, InMemoryChallengeStore, SqlChallengeStore
from gameloop.features.leaderboard.aggregator import LeaderboardAggregator, LeaderboardReader
from gameloop.features.leaderboard.cache import InMemoryLeaderboardCache, LeaderboardCache, RedisLeaderboardCache
from gameloop.features.scheduler.cadence import resolve_timezone
from gameloop.features.scheduler.orchestrator import Orchestrator
from gameloop.features.users.store import InMemoryUserStore, SqlUserStore, UserStore
from gameloop.models.scheduler_run import RunContext

logger = logging.getLogger("gameloop.scheduler")

CHALLENGE_JOB = "challenge_generation"
LEADERBOARD_JOB = "leaderboard_refresh"


@dataclass
class Services:
    clock: Clock
    user_store: UserStore
    challenge_store: ChallengeStore
    cache: LeaderboardCache
    generator: ChallengeGenerator
    aggregator: LeaderboardAggregator
    reader: LeaderboardReader
    orchestrator: Orchestrator


def _build_stores(cfg: Settings):
    if not cfg.DATABASE_URL:
        logger.warning("DATABASE_URL not set; using in-memory stores")
        return InMemoryUserStore(), InMemoryChallengeStore()
    init_engine(cfg.DATABASE_URL)
    create_all_tables()
    factory = get_session_factory()
    return SqlUserStore(factory), SqlChallengeStore(factory)


def _build_cache(cfg: Settings) -> LeaderboardCache:
    if cfg.LEADERBOARD_CACHE_BACKEND == "redis":
        return RedisLeaderboardCache.from_url(
            cfg.REDIS_URL,
            prefix=cfg.LEADERBOARD_CACHE_PREFIX,
            grace_seconds=cfg.LEADERBOARD_GRACE_SECONDS,
        )
    return InMemoryLeaderboardCache()


def build_services(
    cfg: Optional[Settings] = None,
    *,
    clock: Optional[Clock] = None,
    user_store: Optional[UserStore] = None,
    challenge_store: Optional[ChallengeStore] = None,
    cache: Optional[LeaderboardCache] = None,
) -> Services:
    cfg = cfg or settings
    clock = clock or SystemClock()
    tz = resolve_timezone(cfg.REFERENCE_TIMEZONE)

    if user_store is None or challenge_store is None:
        default_users, default_challenges = _build_stores(cfg)
        user_store = user_store or default_users
        challenge_store = challenge_store or default_challenges
    cache = cache or _build_cache(cfg)

    if cfg.CHALLENGE_POLICY == "rotation":
        policy = RotationPolicy()
    else:
        policy = WeakestTopicPolicy(user_store.get_topic_strengths)

    generator = ChallengeGenerator(
        user_store,
        challenge_store,
        clock=clock,
        reference_tz=tz,
        policy=policy,
        active_window_days=cfg.ACTIVE_USER_WINDOW_DAYS,
    )
    aggregator = LeaderboardAggregator(
        user_store,
        cache,
        clock=clock,
        max_entries=cfg.LEADERBOARD_MAX_ENTRIES,
    )
    orchestrator = Orchestrator(
        clock,
        max_workers=cfg.SCHEDULER_MAX_WORKERS,
        default_timeout_seconds=cfg.RUN_TIMEOUT_SECONDS,
        poll_interval_seconds=cfg.SCHEDULER_POLL_SECONDS,
        history_size=cfg.SCHEDULER_HISTORY_SIZE,
        timezone=tz,
    )
    services = Services(
        clock=clock,
        user_store=user_store,
        challenge_store=challenge_store,
        cache=cache,
        generator=generator,
        aggregator=aggregator,
        reader=LeaderboardReader(cache),
        orchestrator=orchestrator,
    )
    register_jobs(services, cfg)
    return services


def register_jobs(services: Services, cfg: Optional[Settings] = None) -> None:
    cfg = cfg or settings

    def generate_challenges(ctx: RunContext):
        day = services.generator.reference_date(ctx.started_at)
        return services.generator.generate_for_all_users(day, ctx=ctx)

    def refresh_leaderboards(ctx: RunContext):
        return services.aggregator.refresh_all(ctx=ctx)

    services.orchestrator.schedule_recurring(CHALLENGE_JOB, cfg.CHALLENGE_CADENCE, generate_challenges)
    services.orchestrator.schedule_recurring(LEADERBOARD_JOB, cfg.LEADERBOARD_CADENCE, refresh_leaderboards)
