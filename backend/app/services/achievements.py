"""
Achievement Evaluator

Unlock rules are stored on each achievement as JSON and parsed into
predicates over a child's aggregated progress:

    {"type": "subject_level", "subject_id": "...", "min_level": 2}
    {"type": "total_hours", "min_hours": 10}                      # optional subject_id
    {"type": "review_count", "min_reviews": 5}                    # optional subject_id
    {"type": "subjects_started", "min_subjects": 3}
    {"type": "criterion_average", "criterion_id": "...", "min_score": 7}
    {"type": "all" | "any", "rules": [...]}

Unlocks are permanent: an achievement already recorded for a child is never
evaluated again, so later level changes cannot revoke it.
"""

import logging
import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from app.core.errors import ConfigurationStale, DuplicateRecord, InvalidRule
from app.services.aggregator import ProgressAggregator, SubjectProgressResult
from app.services.entity_store import EntityStore, parse_id

logger = logging.getLogger(__name__)


@dataclass
class ProgressSnapshot:
    """Everything an unlock rule may look at."""

    child_id: uuid.UUID
    subjects: dict[uuid.UUID, SubjectProgressResult]
    live_subject_ids: set[uuid.UUID] = field(default_factory=set)
    live_criterion_ids: set[uuid.UUID] = field(default_factory=set)

    @property
    def level_map(self) -> dict[uuid.UUID, int]:
        return {subject_id: result.level for subject_id, result in self.subjects.items()}

    @property
    def total_hours(self) -> float:
        return math.fsum(result.hours for result in self.subjects.values())

    @property
    def total_reviews(self) -> int:
        return sum(result.review_count for result in self.subjects.values())

    def require_subject(self, subject_id: uuid.UUID) -> None:
        if subject_id not in self.live_subject_ids:
            raise ConfigurationStale(f"Subject {subject_id} no longer exists")

    def require_criterion(self, criterion_id: uuid.UUID) -> None:
        if criterion_id not in self.live_criterion_ids:
            raise ConfigurationStale(f"Criterion {criterion_id} no longer exists")

    def criterion_average(self, criterion_id: uuid.UUID) -> float | None:
        total, count = 0.0, 0
        for result in self.subjects.values():
            subtotal, subcount = result.criterion_totals.get(str(criterion_id), (0.0, 0))
            total += subtotal
            count += subcount
        return total / count if count else None


class UnlockRule(ABC):
    """A pure predicate over a ProgressSnapshot."""

    @abstractmethod
    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        ...


@dataclass(frozen=True)
class SubjectLevelRule(UnlockRule):
    subject_id: uuid.UUID
    min_level: int

    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        snapshot.require_subject(self.subject_id)
        result = snapshot.subjects.get(self.subject_id)
        return result is not None and result.level >= self.min_level


@dataclass(frozen=True)
class TotalHoursRule(UnlockRule):
    min_hours: float
    subject_id: uuid.UUID | None = None

    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        if self.subject_id is None:
            return snapshot.total_hours >= self.min_hours
        snapshot.require_subject(self.subject_id)
        result = snapshot.subjects.get(self.subject_id)
        return result is not None and result.hours >= self.min_hours


@dataclass(frozen=True)
class ReviewCountRule(UnlockRule):
    min_reviews: int
    subject_id: uuid.UUID | None = None

    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        if self.subject_id is None:
            return snapshot.total_reviews >= self.min_reviews
        snapshot.require_subject(self.subject_id)
        result = snapshot.subjects.get(self.subject_id)
        return result is not None and result.review_count >= self.min_reviews


@dataclass(frozen=True)
class SubjectsStartedRule(UnlockRule):
    min_subjects: int

    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        started = sum(1 for result in snapshot.subjects.values() if result.started)
        return started >= self.min_subjects


@dataclass(frozen=True)
class CriterionAverageRule(UnlockRule):
    criterion_id: uuid.UUID
    min_score: float

    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        snapshot.require_criterion(self.criterion_id)
        average = snapshot.criterion_average(self.criterion_id)
        return average is not None and average >= self.min_score


@dataclass(frozen=True)
class AllRule(UnlockRule):
    rules: tuple[UnlockRule, ...]

    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        return all(rule.is_satisfied(snapshot) for rule in self.rules)


@dataclass(frozen=True)
class AnyRule(UnlockRule):
    rules: tuple[UnlockRule, ...]

    def is_satisfied(self, snapshot: ProgressSnapshot) -> bool:
        # Stale sub-rules make the whole rule stale, even if a sibling holds
        results = [rule.is_satisfied(snapshot) for rule in self.rules]
        return any(results)


# ── Rule parsing ──────────────────────────────────────────────────────────────


def _id_field(raw: Mapping[str, Any], key: str, required: bool = True) -> uuid.UUID | None:
    value = raw.get(key)
    if value is None:
        if required:
            raise InvalidRule(f"Rule {raw.get('type')!r} needs {key!r}")
        return None
    parsed = parse_id(value)
    if parsed is None:
        raise InvalidRule(f"Rule field {key!r} is not a valid id: {value!r}")
    return parsed


def _number_field(raw: Mapping[str, Any], key: str, integer: bool = False) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRule(f"Rule {raw.get('type')!r} needs a numeric {key!r}")
    if integer and not float(value).is_integer():
        raise InvalidRule(f"Rule field {key!r} must be a whole number")
    if not math.isfinite(value) or value < 0:
        raise InvalidRule(f"Rule field {key!r} must be a non-negative number")
    return int(value) if integer else float(value)


def _composite(raw: Mapping[str, Any]) -> tuple[UnlockRule, ...]:
    rules = raw.get("rules")
    if not isinstance(rules, list) or not rules:
        raise InvalidRule(f"Rule {raw.get('type')!r} needs a non-empty 'rules' list")
    return tuple(parse_rule(rule) for rule in rules)


RULE_PARSERS: dict[str, Callable[[Mapping[str, Any]], UnlockRule]] = {
    "subject_level": lambda raw: SubjectLevelRule(
        _id_field(raw, "subject_id"), _number_field(raw, "min_level", integer=True)
    ),
    "total_hours": lambda raw: TotalHoursRule(
        _number_field(raw, "min_hours"), _id_field(raw, "subject_id", required=False)
    ),
    "review_count": lambda raw: ReviewCountRule(
        _number_field(raw, "min_reviews", integer=True), _id_field(raw, "subject_id", required=False)
    ),
    "subjects_started": lambda raw: SubjectsStartedRule(
        _number_field(raw, "min_subjects", integer=True)
    ),
    "criterion_average": lambda raw: CriterionAverageRule(
        _id_field(raw, "criterion_id"), _number_field(raw, "min_score")
    ),
    "all": lambda raw: AllRule(_composite(raw)),
    "any": lambda raw: AnyRule(_composite(raw)),
}


def parse_rule(raw: Any) -> UnlockRule:
    """Parse a stored rule document. Raises InvalidRule when malformed."""
    if not isinstance(raw, Mapping):
        raise InvalidRule("Unlock rule must be an object")
    rule_type = raw.get("type")
    if rule_type not in RULE_PARSERS:
        raise InvalidRule(
            f"Unknown rule type: {rule_type!r}. "
            f"Available types: {', '.join(RULE_PARSERS)}"
        )
    return RULE_PARSERS[rule_type](raw)


# ── Evaluation ────────────────────────────────────────────────────────────────


class AchievementEvaluator:
    def __init__(self, store: EntityStore, aggregator: ProgressAggregator):
        self.store = store
        self.aggregator = aggregator

    async def unlocked_ids(self, child_id: uuid.UUID) -> set[uuid.UUID]:
        records = await self.store.find(
            "child_achievements", [{"$match": {"child_id": child_id}}]
        )
        return {record["achievement_id"] for record in records}

    async def snapshot(self, child_id: uuid.UUID) -> ProgressSnapshot:
        subjects = await self.store.find("subjects", [{"$project": {"id": 1}}])
        criteria = await self.store.find("criteria", [{"$project": {"id": 1}}])
        return ProgressSnapshot(
            child_id=child_id,
            subjects=await self.aggregator.child_progress(child_id),
            live_subject_ids={subject["id"] for subject in subjects},
            live_criterion_ids={criterion["id"] for criterion in criteria},
        )

    async def evaluate(self, child_id: uuid.UUID) -> set[uuid.UUID]:
        """
        Unlock every achievement whose rule the child now satisfies.

        Returns only the achievements unlocked by this call; running it again
        without new reviews returns an empty set.
        """
        child = await self.store.require("children", child_id)
        child_id = child["id"]

        unlocked = await self.unlocked_ids(child_id)
        pending = [
            achievement
            for achievement in await self.store.find("achievements")
            if achievement["id"] not in unlocked
        ]
        if not pending:
            return set()

        snapshot = await self.snapshot(child_id)
        newly_unlocked: set[uuid.UUID] = set()

        for achievement in pending:
            try:
                satisfied = parse_rule(achievement["rule"]).is_satisfied(snapshot)
            except ConfigurationStale as e:
                logger.warning(
                    "Skipping achievement %s (%s): %s", achievement["id"], achievement["name"], e.detail
                )
                continue
            except InvalidRule as e:
                logger.warning(
                    "Skipping achievement %s with malformed rule: %s", achievement["id"], e.detail
                )
                continue

            if not satisfied:
                continue

            try:
                await self.store.insert(
                    "child_achievements",
                    {"child_id": child_id, "achievement_id": achievement["id"]},
                )
            except DuplicateRecord:
                # A concurrent evaluation got there first
                logger.debug("Achievement %s already unlocked for child %s", achievement["id"], child_id)
                continue

            logger.info("Child %s unlocked achievement %s (%s)", child_id, achievement["id"], achievement["name"])
            newly_unlocked.add(achievement["id"])

        return newly_unlocked
