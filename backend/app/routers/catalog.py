"""
Catalog Router

Shared reference data: categories, subjects, criteria and tasks. Reads are
plain passthroughs to the query facade; writes go through the registry.
"""

from datetime import datetime
import uuid

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from app.routers.auth import CurrentParent
from app.routers.deps import AppServices

router = APIRouter()


# Schemas
class CategoryResponse(BaseModel):
    id: uuid.UUID
    name: str
    created_at: datetime


class CreateCategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class LevelThresholdSchema(BaseModel):
    min_score: float
    inclusive: bool | None = None
    name: str | None = None


class SubjectResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None
    category_id: uuid.UUID
    level_thresholds: list[LevelThresholdSchema]
    created_at: datetime


class CreateSubjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    category_id: uuid.UUID
    description: str | None = None
    level_thresholds: list[LevelThresholdSchema] | None = None


class CriterionResponse(BaseModel):
    id: uuid.UUID
    subject_id: uuid.UUID
    name: str
    weight: float | None
    created_at: datetime


class CreateCriterionRequest(BaseModel):
    subject_id: uuid.UUID
    name: str = Field(..., min_length=1, max_length=255)
    weight: float | None = None


class TaskResponse(BaseModel):
    id: uuid.UUID
    subject_id: uuid.UUID
    description: str
    created_at: datetime


class CreateTaskRequest(BaseModel):
    subject_id: uuid.UUID
    description: str = Field(..., min_length=1)


# Categories
@router.get("/categories", response_model=list[CategoryResponse])
async def list_categories(services: AppServices):
    return await services.queries.list_categories()


@router.post("/categories", response_model=CategoryResponse, status_code=status.HTTP_201_CREATED)
async def create_category(data: CreateCategoryRequest, _: CurrentParent, services: AppServices):
    return await services.registry.create_category(data.name)


@router.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(category_id: uuid.UUID, _: CurrentParent, services: AppServices):
    await services.registry.delete("categories", category_id)


# Subjects
@router.get("/subjects", response_model=list[SubjectResponse])
async def list_subjects(services: AppServices, category_id: uuid.UUID | None = None):
    """List subjects, optionally within one category."""
    return await services.queries.list_subjects(category_id)


@router.post("/subjects", response_model=SubjectResponse, status_code=status.HTTP_201_CREATED)
async def create_subject(data: CreateSubjectRequest, _: CurrentParent, services: AppServices):
    thresholds = None
    if data.level_thresholds is not None:
        thresholds = [t.model_dump(exclude_none=True) for t in data.level_thresholds]
    return await services.registry.create_subject(
        data.name,
        data.category_id,
        level_thresholds=thresholds,
        description=data.description,
    )


@router.delete("/subjects/{subject_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subject(subject_id: uuid.UUID, _: CurrentParent, services: AppServices):
    await services.registry.delete("subjects", subject_id)


# Criteria
@router.get("/criteria", response_model=list[CriterionResponse])
async def list_criteria(services: AppServices, subject_id: uuid.UUID | None = None):
    return await services.queries.list_criteria(subject_id)


@router.post("/criteria", response_model=CriterionResponse, status_code=status.HTTP_201_CREATED)
async def create_criterion(data: CreateCriterionRequest, _: CurrentParent, services: AppServices):
    return await services.registry.create_criterion(data.subject_id, data.name, data.weight)


@router.delete("/criteria/{criterion_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_criterion(criterion_id: uuid.UUID, _: CurrentParent, services: AppServices):
    await services.registry.delete("criteria", criterion_id)


# Tasks
@router.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(services: AppServices, subject_id: uuid.UUID | None = None):
    return await services.queries.list_tasks(subject_id)


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(data: CreateTaskRequest, _: CurrentParent, services: AppServices):
    return await services.registry.create_task(data.subject_id, data.description)


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: uuid.UUID, _: CurrentParent, services: AppServices):
    await services.registry.delete("tasks", task_id)
