"""
Query Facade

Read-side views composed from the entity store, the aggregator and the
progress engine. Level maps and unlock sets are derived from review history
on every read (or from the fresh part of the progress cache when enabled).
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings
from app.core.errors import ProgressError
from app.services.achievements import AchievementEvaluator
from app.services.aggregator import ProgressAggregator, SubjectProgressResult
from app.services.entity_store import EntityStore
from app.services.progress_engine import ProgressEngine

logger = logging.getLogger(__name__)


@dataclass
class ProgressReport:
    child_id: uuid.UUID
    subjects: list[SubjectProgressResult]
    achievements: list[dict[str, Any]] = field(default_factory=list)

    @property
    def level_map(self) -> dict[uuid.UUID, int]:
        return {result.subject_id: result.level for result in self.subjects}

    @property
    def total_hours(self) -> float:
        return math.fsum(result.hours for result in self.subjects)

    @property
    def total_reviews(self) -> int:
        return sum(result.review_count for result in self.subjects)


def _match(**conditions: Any) -> list[dict[str, Any]]:
    query = {key: value for key, value in conditions.items() if value is not None}
    return [{"$match": query}] if query else []


class QueryFacade:
    def __init__(
        self,
        store: EntityStore,
        aggregator: ProgressAggregator,
        evaluator: AchievementEvaluator,
        engine: ProgressEngine,
        settings: Settings,
    ):
        self.store = store
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.engine = engine
        self.settings = settings

    # ── Children ──

    async def list_children(self, parent_id: uuid.UUID | None = None) -> list[dict[str, Any]]:
        return await self.store.find("children", _match(parent_id=parent_id))

    async def get_child(self, child_id: Any) -> dict[str, Any]:
        return await self.store.require("children", child_id)

    # ── Catalog ──

    async def list_categories(self) -> list[dict[str, Any]]:
        return await self.store.find("categories")

    async def list_subjects(self, category_id: uuid.UUID | None = None) -> list[dict[str, Any]]:
        return await self.store.find("subjects", _match(category_id=category_id))

    async def list_criteria(self, subject_id: uuid.UUID | None = None) -> list[dict[str, Any]]:
        return await self.store.find("criteria", _match(subject_id=subject_id))

    async def list_tasks(self, subject_id: uuid.UUID | None = None) -> list[dict[str, Any]]:
        return await self.store.find("tasks", _match(subject_id=subject_id))

    async def list_achievements(self) -> list[dict[str, Any]]:
        return await self.store.find("achievements")

    # ── Child history & progress ──

    async def get_reviews(
        self, child_id: Any, subject_id: uuid.UUID | None = None
    ) -> list[dict[str, Any]]:
        """A child's review history, newest first."""
        child = await self.store.require("children", child_id)
        return await self.store.find(
            "reviews",
            _match(child_id=child["id"], subject_id=subject_id)
            + [{"$sort": {"created_at": -1}}],
        )

    async def get_achievements(self, child_id: Any) -> list[dict[str, Any]]:
        """Unlocked achievements with their unlock time, oldest first."""
        child = await self.store.require("children", child_id)
        records = await self.store.find(
            "child_achievements", [{"$match": {"child_id": child["id"]}}]
        )
        if not records:
            return []
        # Deleted achievements stay in the child's history
        catalog = {
            achievement["id"]: achievement
            for achievement in await self.store.find(
                "achievements",
                [{"$match": {"id": {"$in": [record["achievement_id"] for record in records]}}}],
                include_deleted=True,
            )
        }
        return [
            {
                "id": record["achievement_id"],
                "name": catalog[record["achievement_id"]]["name"],
                "description": catalog[record["achievement_id"]]["description"],
                "unlocked_at": record["created_at"],
            }
            for record in records
            if record["achievement_id"] in catalog
        ]

    async def get_progress(self, child_id: Any) -> ProgressReport:
        child = await self.store.require("children", child_id)

        if self.settings.evaluate_on_read:
            # Catches up on a recompute that failed after its review was stored
            try:
                await self.evaluator.evaluate(child["id"])
            except (ProgressError, SQLAlchemyError):
                logger.exception("Achievement catch-up failed for child %s", child["id"])

        if self.settings.progress_cache_enabled:
            progress = await self.engine.cached_child_progress(child["id"])
        else:
            progress = await self.aggregator.child_progress(child["id"])

        return ProgressReport(
            child_id=child["id"],
            subjects=sorted(progress.values(), key=lambda result: str(result.subject_id)),
            achievements=await self.get_achievements(child["id"]),
        )
