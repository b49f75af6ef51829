"""
Standalone scheduler worker.

Runs challenge generation and leaderboard refresh on their cadences without
the HTTP API. Use --once to run a single job immediately and exit.
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading

from dotenv import load_dotenv

from gameloop.core.config import settings, validate_config
from gameloop.core.logging import configure_logging
from gameloop.features.scheduler.jobs import CHALLENGE_JOB, LEADERBOARD_JOB, build_services

logger = logging.getLogger("gameloop.scheduler")


def run_forever() -> None:
    services = build_services(settings)
    orchestrator = services.orchestrator
    stop = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("shutdown signal received", extra={"signal": signum})
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    orchestrator.start()
    orchestrator.run_now(LEADERBOARD_JOB)
    stop.wait()
    orchestrator.stop(wait=True, timeout=settings.RUN_TIMEOUT_SECONDS)


def run_once(job: str) -> int:
    services = build_services(settings)
    orchestrator = services.orchestrator
    orchestrator.run_now(job)
    orchestrator.wait_idle(settings.RUN_TIMEOUT_SECONDS)
    orchestrator.expire_overdue()
    runs = orchestrator.recent_runs(job, 1)
    orchestrator.stop(wait=False)
    outcome = runs[0].outcome if runs else "failure"
    logger.info("one-off run finished", extra={"task": job, "outcome": outcome})
    return 0 if outcome in ("success", "partial") else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="gameloop scheduler worker")
    parser.add_argument(
        "--once",
        choices=[CHALLENGE_JOB, LEADERBOARD_JOB],
        help="Run one job immediately and exit",
    )
    args = parser.parse_args()

    load_dotenv()
    configure_logging(settings.ENV)
    validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

    if args.once:
        return run_once(args.once)
    run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
