"""
Progress Aggregator

Folds a child's review history into a per-subject aggregate score and level.

Scoring rules:
1. A review's weighted score is sum(score * weight) / sum(weight) over the
   criteria present in its assessment.
2. Reviews with an empty assessment score 0 and are left out of the mean.
3. The subject aggregate is the plain mean of the scored reviews, every
   review counting equally regardless of age.
4. The level is the number of subject thresholds the aggregate reaches. A
   score sitting exactly on a threshold only reaches it when that threshold
   is inclusive.

``compute_subject_progress`` is pure; ``ProgressAggregator`` only loads the
inputs from the entity store.
"""

import math
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from app.core.config import Settings
from app.core.errors import InvalidInput
from app.services.entity_store import EntityStore

# Level of a subject with no scored reviews yet
UNSTARTED_LEVEL = -1

# Aggregates are rounded before the threshold lookup so float noise
# never moves a score across a boundary
SCORE_PRECISION = 6


@dataclass(frozen=True)
class LevelThreshold:
    min_score: float
    inclusive: bool = False
    name: str | None = None

    def reached_by(self, score: float) -> bool:
        if self.inclusive:
            return score >= self.min_score
        return score > self.min_score

    def to_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {"min_score": self.min_score, "inclusive": self.inclusive}
        if self.name:
            config["name"] = self.name
        return config


@dataclass(frozen=True)
class LevelScale:
    """Ordered tiers of a subject. Level 0 is everything below the first threshold."""

    thresholds: tuple[LevelThreshold, ...]

    @classmethod
    def from_config(
        cls,
        raw: Iterable[Any],
        default_inclusive: bool = False,
        max_score: float | None = None,
    ) -> "LevelScale":
        """
        Build a scale from stored subject config.

        Entries are either bare numbers (lower bounds using the default
        inclusivity) or ``{"min_score", "inclusive"?, "name"?}`` dicts.
        """
        thresholds = []
        for entry in raw:
            if isinstance(entry, Mapping):
                min_score = entry.get("min_score")
                inclusive = entry.get("inclusive", default_inclusive)
                name = entry.get("name")
            else:
                min_score, inclusive, name = entry, default_inclusive, None

            if isinstance(min_score, bool) or not isinstance(min_score, (int, float)):
                raise InvalidInput(f"Level threshold needs a numeric min_score, got {min_score!r}")
            if not math.isfinite(min_score) or min_score < 0:
                raise InvalidInput(f"Level threshold out of range: {min_score}")
            if max_score is not None and min_score > max_score:
                raise InvalidInput(f"Level threshold {min_score} exceeds the maximum score {max_score}")
            if not isinstance(inclusive, bool):
                raise InvalidInput("Level threshold 'inclusive' must be a boolean")
            thresholds.append(LevelThreshold(float(min_score), inclusive, name))

        thresholds.sort(key=lambda t: t.min_score)
        for lower, upper in zip(thresholds, thresholds[1:]):
            if lower.min_score == upper.min_score:
                raise InvalidInput(f"Duplicate level threshold: {lower.min_score}")
        return cls(tuple(thresholds))

    def level_for(self, score: float | None) -> int:
        if score is None:
            return UNSTARTED_LEVEL
        level = 0
        for threshold in self.thresholds:
            if not threshold.reached_by(score):
                break
            level += 1
        return level

    def level_name(self, level: int) -> str | None:
        if level <= 0 or level > len(self.thresholds):
            return None
        return self.thresholds[level - 1].name

    def to_config(self) -> list[dict[str, Any]]:
        return [threshold.to_config() for threshold in self.thresholds]


@dataclass(frozen=True)
class SubjectProgressResult:
    subject_id: uuid.UUID
    aggregate_score: float | None
    level: int
    review_count: int
    scored_review_count: int
    hours: float
    # criterion id -> (sum of scores, number of scores)
    criterion_totals: Mapping[str, tuple[float, int]] = field(default_factory=dict)

    @property
    def started(self) -> bool:
        return self.review_count > 0


def weighted_review_score(
    assessment: Mapping[str, float],
    weights: Mapping[str, float],
    default_weight: float = 1.0,
) -> float:
    """Weighted mean of one review's scores. An empty assessment scores 0."""
    if not assessment:
        return 0.0
    numerator = math.fsum(
        score * weights.get(criterion_id, default_weight)
        for criterion_id, score in assessment.items()
    )
    denominator = math.fsum(
        weights.get(criterion_id, default_weight) for criterion_id in assessment
    )
    return numerator / denominator


def compute_subject_progress(
    subject_id: uuid.UUID,
    reviews: Sequence[Mapping[str, Any]],
    weights: Mapping[str, float],
    scale: LevelScale,
    default_weight: float = 1.0,
) -> SubjectProgressResult:
    """Aggregate one (child, subject) review history. Same input, same output."""
    scores = []
    hours = []
    criterion_scores: dict[str, list[float]] = defaultdict(list)

    for review in reviews:
        hours.append(review.get("hours") or 0.0)
        assessment = review.get("assessment") or {}
        if not assessment:
            continue
        scores.append(weighted_review_score(assessment, weights, default_weight))
        for criterion_id, score in assessment.items():
            criterion_scores[str(criterion_id)].append(score)

    aggregate = round(math.fsum(scores) / len(scores), SCORE_PRECISION) if scores else None

    return SubjectProgressResult(
        subject_id=subject_id,
        aggregate_score=aggregate,
        level=scale.level_for(aggregate),
        review_count=len(reviews),
        scored_review_count=len(scores),
        hours=math.fsum(hours),
        criterion_totals={
            criterion_id: (math.fsum(values), len(values))
            for criterion_id, values in sorted(criterion_scores.items())
        },
    )


class ProgressAggregator:
    """Loads review history and catalog config, then runs the pure fold."""

    def __init__(self, store: EntityStore, settings: Settings):
        self.store = store
        self.settings = settings

    def level_scale(self, subject: Mapping[str, Any]) -> LevelScale:
        # An empty list is a configured scale with a single tier
        raw = subject.get("level_thresholds")
        if raw is None:
            raw = self.settings.default_level_thresholds
        return LevelScale.from_config(raw, self.settings.level_boundary_inclusive)

    async def criterion_weights(self, subject_ids: Iterable[uuid.UUID]) -> dict[str, float]:
        # Deleted criteria keep weighting the reviews that already used them
        criteria = await self.store.find(
            "criteria",
            [{"$match": {"subject_id": {"$in": list(subject_ids)}}}],
            include_deleted=True,
        )
        return {
            str(c["id"]): c["weight"] if c["weight"] is not None else self.settings.default_criterion_weight
            for c in criteria
        }

    async def reviews_for(
        self, child_id: uuid.UUID, subject_id: uuid.UUID | None = None
    ) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"child_id": child_id}
        if subject_id is not None:
            query["subject_id"] = subject_id
        return await self.store.find("reviews", [{"$match": query}])

    async def subject_progress(
        self, child_id: uuid.UUID, subject_id: uuid.UUID
    ) -> SubjectProgressResult:
        subject = await self.store.require("subjects", subject_id)
        reviews = await self.reviews_for(child_id, subject["id"])
        weights = await self.criterion_weights([subject["id"]])
        return compute_subject_progress(
            subject["id"],
            reviews,
            weights,
            self.level_scale(subject),
            self.settings.default_criterion_weight,
        )

    async def child_progress(self, child_id: uuid.UUID) -> dict[uuid.UUID, SubjectProgressResult]:
        """Progress for every live subject the child has at least one review in."""
        reviews = await self.reviews_for(child_id)
        by_subject: dict[uuid.UUID, list[dict[str, Any]]] = defaultdict(list)
        for review in reviews:
            by_subject[review["subject_id"]].append(review)
        if not by_subject:
            return {}

        subjects = await self.store.find(
            "subjects", [{"$match": {"id": {"$in": list(by_subject)}}}]
        )
        weights = await self.criterion_weights(by_subject)
        return {
            subject["id"]: compute_subject_progress(
                subject["id"],
                by_subject[subject["id"]],
                weights,
                self.level_scale(subject),
                self.settings.default_criterion_weight,
            )
            for subject in subjects
        }

    async def level_map(self, child_id: uuid.UUID) -> dict[uuid.UUID, int]:
        progress = await self.child_progress(child_id)
        return {subject_id: result.level for subject_id, result in progress.items()}
