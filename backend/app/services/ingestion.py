"""
Review Ingestion

Validates and records one assessment event, then triggers recomputation of
the affected (child, subject) pair. Every check runs before the write, so a
rejected review leaves nothing behind.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from app.core.config import Settings
from app.core.errors import (
    InvalidHours,
    InvalidInput,
    ReferenceNotFound,
    ScoreOutOfRange,
    UnknownCriterion,
)
from app.services.entity_store import EntityStore, parse_id
from app.services.progress_engine import ProgressEngine

logger = logging.getLogger(__name__)

# Matches FastAPI's BackgroundTasks.add_task
Scheduler = Callable[..., None]


@dataclass
class IngestionResult:
    review: dict[str, Any]
    # None when recomputation was deferred or failed
    unlocked: set[uuid.UUID] | None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ReviewIngestion:
    def __init__(self, store: EntityStore, engine: ProgressEngine, settings: Settings):
        self.store = store
        self.engine = engine
        self.settings = settings

    async def validate_assessment(
        self, subject_id: uuid.UUID, assessment: Mapping[Any, Any]
    ) -> dict[str, float]:
        """Check criteria and score range; returns the assessment keyed by criterion id string."""
        criteria = await self.store.find(
            "criteria", [{"$match": {"subject_id": subject_id}}]
        )
        if not criteria:
            raise UnknownCriterion(f"Subject {subject_id} has no criteria and cannot be reviewed")
        known = {criterion["id"] for criterion in criteria}

        normalized: dict[str, float] = {}
        for key, score in assessment.items():
            criterion_id = parse_id(key)
            if criterion_id is None or criterion_id not in known:
                raise UnknownCriterion(f"Criterion {key} does not belong to subject {subject_id}")
            if str(criterion_id) in normalized:
                raise InvalidInput(f"Criterion {criterion_id} is assessed more than once")
            if not _is_number(score) or not math.isfinite(score):
                raise ScoreOutOfRange(f"Score for criterion {key} must be a number")
            if score < 0 or score > self.settings.max_score:
                raise ScoreOutOfRange(
                    f"Score {score} for criterion {key} is outside [0, {self.settings.max_score}]"
                )
            normalized[str(criterion_id)] = score
        return normalized

    async def submit_review(
        self,
        child_id: Any,
        subject_id: Any,
        hours: float,
        assessment: Mapping[Any, Any],
        task_id: Any = None,
        schedule: Scheduler | None = None,
    ) -> IngestionResult:
        """
        Record a review and recompute the child's progress for its subject.

        In "deferred" recompute mode with a ``schedule`` callable (FastAPI's
        ``BackgroundTasks.add_task``) the recompute runs after the response.
        """
        child = await self.store.require("children", child_id)
        subject = await self.store.require("subjects", subject_id)
        if task_id is not None:
            task = await self.store.require("tasks", task_id)
            if task["subject_id"] != subject["id"]:
                raise ReferenceNotFound("tasks", task_id)

        if not _is_number(hours) or not math.isfinite(hours) or hours < 0:
            raise InvalidHours(f"Hours must be a non-negative number, got {hours!r}")

        normalized = await self.validate_assessment(subject["id"], assessment)

        review = await self.store.insert(
            "reviews",
            {
                "child_id": child["id"],
                "subject_id": subject["id"],
                "task_id": task_id,
                "hours": float(hours),
                "assessment": normalized,
            },
        )
        logger.info(
            "Recorded review %s for child=%s subject=%s (%d criteria, %.2fh)",
            review["id"], child["id"], subject["id"], len(normalized), hours,
        )

        if self.settings.recompute_mode == "deferred" and schedule is not None:
            schedule(self.engine.recompute_safely, child["id"], subject["id"])
            return IngestionResult(review=review, unlocked=None)

        unlocked = await self.engine.recompute_safely(child["id"], subject["id"])
        return IngestionResult(review=review, unlocked=unlocked)
