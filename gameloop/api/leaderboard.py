from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from gameloop.api.deps import get_services
from gameloop.core.auth import get_current_user_id
from gameloop.features.leaderboard.aggregator import MAX_PAGE_SIZE
from gameloop.features.scheduler.jobs import Services
from gameloop.models.leaderboard import GLOBAL_SCOPE, topic_scope

router = APIRouter(prefix="/v1/leaderboard", tags=["leaderboard"])


def _board_response(board: dict) -> dict:
    computed_at = board["computed_at"]
    return {
        "scope": board["scope"],
        "version": board["version"],
        "computed_at": computed_at.isoformat() if computed_at else None,
        "total": board["total"],
        "entries": [entry.model_dump(mode="json") for entry in board["entries"]],
    }


@router.get("/global")
def get_global_leaderboard(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    skip: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    return _board_response(services.reader.get_board(GLOBAL_SCOPE, limit=limit, skip=skip))


@router.get("/topics/{topic_id}")
def get_topic_leaderboard(
    topic_id: str,
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    skip: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    return _board_response(services.reader.get_board(topic_scope(topic_id), limit=limit, skip=skip))


@router.get("/me")
def get_my_rank(
    topic_id: Optional[str] = Query(None, min_length=1),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """The caller's entry in the current snapshot; 404 when not ranked."""
    scope = topic_scope(topic_id) if topic_id else GLOBAL_SCOPE
    entry = services.reader.get_user_rank(user_id, scope)
    return {"scope": scope, "entry": entry.model_dump(mode="json")}
