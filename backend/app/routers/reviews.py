from typing import Literal
import uuid

from fastapi import APIRouter, BackgroundTasks, status
from pydantic import BaseModel

from app.routers.auth import CurrentParent
from app.routers.children import ReviewResponse, get_owned_child
from app.routers.deps import AppServices

router = APIRouter()


# Schemas
class SubmitReviewRequest(BaseModel):
    child_id: uuid.UUID
    subject_id: uuid.UUID
    task_id: uuid.UUID | None = None
    hours: float = 0.0
    # criterion id -> score
    assessment: dict[str, float] = {}


class SubmitReviewResponse(BaseModel):
    review: ReviewResponse
    recompute: Literal["completed", "deferred", "failed"]
    unlocked_achievements: list[uuid.UUID]


# Endpoints
@router.post("", response_model=SubmitReviewResponse, status_code=status.HTTP_201_CREATED)
async def submit_review(
    data: SubmitReviewRequest,
    parent_id: CurrentParent,
    services: AppServices,
    background_tasks: BackgroundTasks,
):
    """Record a review and update the child's progress."""
    await get_owned_child(data.child_id, parent_id, services)

    result = await services.ingestion.submit_review(
        data.child_id,
        data.subject_id,
        data.hours,
        data.assessment,
        task_id=data.task_id,
        schedule=background_tasks.add_task,
    )

    if result.unlocked is not None:
        recompute = "completed"
    elif services.ingestion.settings.recompute_mode == "deferred":
        recompute = "deferred"
    else:
        recompute = "failed"

    return SubmitReviewResponse(
        review=ReviewResponse(**result.review),
        recompute=recompute,
        unlocked_achievements=sorted(result.unlocked or set(), key=str),
    )
