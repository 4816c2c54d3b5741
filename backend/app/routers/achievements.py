"""
Achievements Router

Exposes the achievement catalog. Unlock rules are validated on creation.
"""

from datetime import datetime
from typing import Any
import uuid

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from app.routers.auth import CurrentParent
from app.routers.deps import AppServices

router = APIRouter()


class AchievementResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None
    rule: dict[str, Any]
    created_at: datetime


class CreateAchievementRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    rule: dict[str, Any]


@router.get("", response_model=list[AchievementResponse])
async def list_achievements(services: AppServices):
    """Return the achievement catalog."""
    return await services.queries.list_achievements()


@router.post("", response_model=AchievementResponse, status_code=status.HTTP_201_CREATED)
async def create_achievement(data: CreateAchievementRequest, _: CurrentParent, services: AppServices):
    return await services.registry.create_achievement(data.name, data.rule, data.description)


@router.delete("/{achievement_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_achievement(achievement_id: uuid.UUID, _: CurrentParent, services: AppServices):
    """Retire an achievement. Existing unlocks stay in each child's history."""
    await services.registry.delete("achievements", achievement_id)
