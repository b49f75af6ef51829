import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from gameloop.api import challenges, health, leaderboard, metrics, scheduler
from gameloop.core.config import settings, validate_config
from gameloop.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from gameloop.core.logging import configure_logging
from gameloop.core.middleware.metrics import MetricsMiddleware
from gameloop.core.middleware.request_id import RequestIdMiddleware
from gameloop.features.scheduler.jobs import LEADERBOARD_JOB, Services, build_services

logger = logging.getLogger("gameloop")


def create_app(services: Optional[Services] = None, *, start_scheduler: Optional[bool] = None) -> FastAPI:
    """Build the API app.

    Services are built from settings on startup unless supplied. The
    orchestrator runs inside the API process when SCHEDULER_ENABLED is set;
    otherwise run `python -m gameloop.workers.scheduler_worker` separately.
    """
    run_scheduler = settings.SCHEDULER_ENABLED if start_scheduler is None else start_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting gameloop API...")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        orchestrator = app.state.services.orchestrator
        if run_scheduler:
            orchestrator.start()
            # Serve a board right away instead of waiting for the first cadence fire
            orchestrator.run_now(LEADERBOARD_JOB)
        try:
            yield
        finally:
            logger.info("Stopping gameloop API...")
            if run_scheduler:
                orchestrator.stop(wait=False)

    app = FastAPI(title="gameloop", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(challenges.router)
    app.include_router(leaderboard.router)
    app.include_router(scheduler.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("gameloop.main:app", host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
