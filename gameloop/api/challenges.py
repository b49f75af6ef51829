from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from gameloop.api.deps import get_services
from gameloop.core.auth import get_current_user_id
from gameloop.features.challenges.generator import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_LIMIT
from gameloop.features.scheduler.jobs import Services
from gameloop.models.challenge import Difficulty

router = APIRouter(tags=["challenges"])


class ProgressRequest(BaseModel):
    topic_id: str = Field(..., min_length=1)
    difficulty: Difficulty
    solved: bool = True


@router.get("/v1/challenges/today")
def get_today_challenge(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Today's assignment for the caller, assigned on demand if the batch has not run yet."""
    return services.generator.get_today(user_id).to_dict()


@router.get("/v1/challenges/history")
def get_challenge_history(
    limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    items = services.generator.get_history(user_id, limit)
    return {"user_id": user_id, "count": len(items), "items": [item.to_dict() for item in items]}


@router.post("/v1/challenges/progress")
def record_challenge_progress(
    req: ProgressRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Count a solved question toward today's challenge."""
    assignment = services.generator.record_progress(
        user_id, req.topic_id, req.difficulty, solved=req.solved
    )
    return {"assignment": assignment.to_dict() if assignment else None}
