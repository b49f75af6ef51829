from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from gameloop.api.deps import get_services
from gameloop.features.scheduler.jobs import Services

router = APIRouter(prefix="/v1/scheduler", tags=["scheduler"])


@router.get("/runs")
def list_recent_runs(
    task: Optional[str] = Query(None, min_length=1),
    limit: int = Query(20, ge=1, le=200),
    services: Services = Depends(get_services),
):
    orchestrator = services.orchestrator
    runs = orchestrator.recent_runs(task, limit)
    return {
        "in_flight": orchestrator.in_flight(),
        "next_fire": {
            name: (fire.isoformat() if fire else None)
            for name in orchestrator.job_names()
            for fire in [orchestrator.next_fire_time(name)]
        },
        "runs": [run.to_dict() for run in runs],
    }
