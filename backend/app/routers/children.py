from datetime import date, datetime
import uuid

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from app.routers.auth import CurrentParent
from app.routers.deps import AppServices
from app.services.container import Services

router = APIRouter()


# Schemas
class ChildResponse(BaseModel):
    id: uuid.UUID
    parent_id: uuid.UUID
    first_name: str
    birthday: date | None
    age: int
    created_at: datetime


class CreateChildRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    birthday: date | None = None
    age: int | None = Field(None, ge=0)


class SubjectProgressResponse(BaseModel):
    subject_id: uuid.UUID
    aggregate_score: float | None
    level: int
    review_count: int
    scored_review_count: int
    hours: float


class UnlockedAchievementResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None
    unlocked_at: datetime


class ProgressResponse(BaseModel):
    child_id: uuid.UUID
    levels: dict[uuid.UUID, int]
    subjects: list[SubjectProgressResponse]
    total_hours: float
    total_reviews: int
    achievements: list[UnlockedAchievementResponse]


class ReviewResponse(BaseModel):
    id: uuid.UUID
    child_id: uuid.UUID
    subject_id: uuid.UUID
    task_id: uuid.UUID | None
    hours: float
    assessment: dict[str, float]
    created_at: datetime


class RebuildResponse(BaseModel):
    child_id: uuid.UUID
    unlocked_achievements: list[uuid.UUID]


async def get_owned_child(child_id: uuid.UUID, parent_id: uuid.UUID, services: Services) -> dict:
    """Return the child if the current guardian owns it."""
    child = await services.store.get("children", child_id)
    if not child or child["parent_id"] != parent_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Child not found",
        )
    return child


# Endpoints
@router.get("", response_model=list[ChildResponse])
async def list_children(parent_id: CurrentParent, services: AppServices):
    """List all children registered by the current guardian."""
    return await services.queries.list_children(parent_id)


@router.post("", response_model=ChildResponse, status_code=status.HTTP_201_CREATED)
async def create_child(data: CreateChildRequest, parent_id: CurrentParent, services: AppServices):
    """Register a new child."""
    return await services.registry.create_child(
        parent_id,
        data.first_name,
        birthday=data.birthday,
        age=data.age,
    )


@router.get("/{child_id}", response_model=ChildResponse)
async def get_child(child_id: uuid.UUID, parent_id: CurrentParent, services: AppServices):
    """Get a specific child."""
    return await get_owned_child(child_id, parent_id, services)


@router.delete("/{child_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_child(child_id: uuid.UUID, parent_id: CurrentParent, services: AppServices):
    """Delete a child. Reviews are kept as history."""
    await get_owned_child(child_id, parent_id, services)
    await services.registry.delete("children", child_id)


@router.get("/{child_id}/progress", response_model=ProgressResponse)
async def get_progress(child_id: uuid.UUID, parent_id: CurrentParent, services: AppServices):
    """Current level per subject plus unlocked achievements."""
    await get_owned_child(child_id, parent_id, services)
    report = await services.queries.get_progress(child_id)

    return ProgressResponse(
        child_id=report.child_id,
        levels=report.level_map,
        subjects=[
            SubjectProgressResponse(
                subject_id=s.subject_id,
                aggregate_score=s.aggregate_score,
                level=s.level,
                review_count=s.review_count,
                scored_review_count=s.scored_review_count,
                hours=s.hours,
            )
            for s in report.subjects
        ],
        total_hours=report.total_hours,
        total_reviews=report.total_reviews,
        achievements=[UnlockedAchievementResponse(**a) for a in report.achievements],
    )


@router.get("/{child_id}/reviews", response_model=list[ReviewResponse])
async def get_reviews(
    child_id: uuid.UUID,
    parent_id: CurrentParent,
    services: AppServices,
    subject_id: uuid.UUID | None = None,
):
    """Review history for a child, newest first."""
    await get_owned_child(child_id, parent_id, services)
    return await services.queries.get_reviews(child_id, subject_id)


@router.get("/{child_id}/achievements", response_model=list[UnlockedAchievementResponse])
async def get_achievements(child_id: uuid.UUID, parent_id: CurrentParent, services: AppServices):
    """Achievements the child has unlocked."""
    await get_owned_child(child_id, parent_id, services)
    return await services.queries.get_achievements(child_id)


@router.post("/{child_id}/rebuild", response_model=RebuildResponse)
async def rebuild_progress(child_id: uuid.UUID, parent_id: CurrentParent, services: AppServices):
    """Replay the child's review history into derived state."""
    await get_owned_child(child_id, parent_id, services)
    unlocked = await services.progress.rebuild(child_id)
    return RebuildResponse(child_id=child_id, unlocked_achievements=sorted(unlocked, key=str))
