"""Activities API endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel

from berth.api.dependencies import ActivityRecorderDep, AuthDep
from berth.models.activity import ActivityType

router = APIRouter()


class ActivityResponse(BaseModel):
    id: str
    type: ActivityType
    actor: str
    target: str
    description: str
    snapshot: dict[str, Any]
    created_at: datetime


class ActivityListResponse(BaseModel):
    items: list[ActivityResponse]


@router.get("", response_model=ActivityListResponse)
async def list_activities(
    recorder: ActivityRecorderDep,
    caller: AuthDep,
    target: str | None = Query(None),
    type: ActivityType | None = Query(None),
    actor: str | None = Query(None, description="Admins only; users always see their own"),
    limit: int = Query(50, ge=1, le=500),
) -> ActivityListResponse:
    """List audit entries, newest first."""
    if not caller.is_admin:
        actor = caller.owner

    items = await recorder.list(actor=actor, target=target, type=type, limit=limit)
    return ActivityListResponse(
        items=[
            ActivityResponse(
                id=a.id,
                type=a.type,
                actor=a.actor,
                target=a.target,
                description=a.description,
                snapshot=a.snapshot,
                created_at=a.created_at,
            )
            for a in items
        ]
    )
