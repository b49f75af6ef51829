import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Leaderboard cache
    LEADERBOARD_CACHE_BACKEND: str = "memory"  # memory | redis
    LEADERBOARD_CACHE_PREFIX: str = "gameloop:leaderboard"
    LEADERBOARD_GRACE_SECONDS: int = 60  # superseded snapshots stay readable this long
    LEADERBOARD_MAX_ENTRIES: int = 0  # 0 = keep every ranked user

    # Scheduler cadences (crontab or "every N minutes")
    SCHEDULER_ENABLED: bool = True
    CHALLENGE_CADENCE: str = "0 0 * * *"
    LEADERBOARD_CADENCE: str = "*/15 * * * *"
    REFERENCE_TIMEZONE: str = "UTC"
    RUN_TIMEOUT_SECONDS: float = 600.0
    SCHEDULER_POLL_SECONDS: float = 1.0
    SCHEDULER_MAX_WORKERS: int = 4
    SCHEDULER_HISTORY_SIZE: int = 200

    # Challenge generation
    ACTIVE_USER_WINDOW_DAYS: int = 30
    CHALLENGE_POLICY: str = "weakest_topic"  # weakest_topic | rotation

    # Auth
    JWT_SECRET: Optional[str] = None
    AUTH_ALLOW_USER_HEADER: bool = True  # X-User-Id fallback for dev/tests

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Cadence and timezone problems are always fatal: a half-configured
    scheduler must never start.
    """
    from gameloop.core.errors import SchedulerConfigError
    from gameloop.features.scheduler.cadence import parse_cadence, resolve_timezone

    cfg = settings_obj or settings
    log = logger or logging.getLogger("gameloop")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    tz = resolve_timezone(cfg.REFERENCE_TIMEZONE)
    parse_cadence(cfg.CHALLENGE_CADENCE, tz)
    parse_cadence(cfg.LEADERBOARD_CADENCE, tz)
    if cfg.RUN_TIMEOUT_SECONDS <= 0:
        raise SchedulerConfigError("RUN_TIMEOUT_SECONDS must be positive")
    if cfg.LEADERBOARD_CACHE_BACKEND not in ("memory", "redis"):
        raise SchedulerConfigError(f"Unknown LEADERBOARD_CACHE_BACKEND: {cfg.LEADERBOARD_CACHE_BACKEND}")
    if cfg.CHALLENGE_POLICY not in ("weakest_topic", "rotation"):
        raise SchedulerConfigError(f"Unknown CHALLENGE_POLICY: {cfg.CHALLENGE_POLICY}")

    required_keys = ["DATABASE_URL"]
    if (cfg.ENV or "").lower() == "production":
        required_keys.append("JWT_SECRET")

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
