"""
Entity Registry

Administrative and guardian writes: children and the shared catalog
(categories, subjects, criteria, tasks, achievements). Applies data-model
invariants on top of the entity store's reference checks.
"""

import logging
import math
import uuid
from datetime import date
from typing import Any

from app.core.config import Settings
from app.core.errors import InvalidInput
from app.services.achievements import parse_rule
from app.services.aggregator import LevelScale
from app.services.entity_store import EntityStore

logger = logging.getLogger(__name__)

# Collections callers may soft-delete through the API
DELETABLE = ("children", "categories", "subjects", "criteria", "tasks", "achievements")


def age_on(birthday: date, today: date) -> int:
    """Whole years between birthday and today."""
    before_birthday = (today.month, today.day) < (birthday.month, birthday.day)
    return today.year - birthday.year - int(before_birthday)


class EntityRegistry:
    def __init__(self, store: EntityStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def create_child(
        self,
        parent_id: uuid.UUID,
        first_name: str,
        birthday: date | None = None,
        age: int | None = None,
    ) -> dict[str, Any]:
        if birthday is not None:
            if birthday > date.today():
                raise InvalidInput("Birthday cannot be in the future")
            if age is None:
                age = age_on(birthday, date.today())
        if age is None:
            age = 0
        if age < 0:
            raise InvalidInput("Age must be zero or more")

        child = await self.store.insert(
            "children",
            {"parent_id": parent_id, "first_name": first_name, "birthday": birthday, "age": age},
        )
        logger.info("Registered child %s for parent %s", child["id"], parent_id)
        return child

    async def create_category(self, name: str) -> dict[str, Any]:
        return await self.store.insert("categories", {"name": name})

    async def create_subject(
        self,
        name: str,
        category_id: Any,
        level_thresholds: list[Any] | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a subject with its level scale.

        Boundary inclusivity is resolved here and stored per threshold, so a
        later change to the global default does not move existing levels.
        """
        raw = level_thresholds if level_thresholds is not None else self.settings.default_level_thresholds
        scale = LevelScale.from_config(
            raw, self.settings.level_boundary_inclusive, self.settings.max_score
        )
        return await self.store.insert(
            "subjects",
            {
                "name": name,
                "category_id": category_id,
                "description": description,
                "level_thresholds": scale.to_config(),
            },
        )

    async def create_criterion(
        self, subject_id: Any, name: str, weight: float | None = None
    ) -> dict[str, Any]:
        if weight is not None:
            if isinstance(weight, bool) or not isinstance(weight, (int, float)):
                raise InvalidInput("Criterion weight must be a number")
            if not math.isfinite(weight) or weight <= 0:
                raise InvalidInput("Criterion weight must be greater than zero")
        return await self.store.insert(
            "criteria", {"subject_id": subject_id, "name": name, "weight": weight}
        )

    async def create_task(self, subject_id: Any, description: str) -> dict[str, Any]:
        return await self.store.insert("tasks", {"subject_id": subject_id, "description": description})

    async def create_achievement(
        self, name: str, rule: dict[str, Any], description: str | None = None
    ) -> dict[str, Any]:
        # Reject malformed rules up front; stale references are checked at evaluation
        parse_rule(rule)
        return await self.store.insert(
            "achievements", {"name": name, "description": description, "rule": rule}
        )

    async def delete(self, collection: str, ref_id: Any) -> dict[str, Any]:
        if collection not in DELETABLE:
            raise ValueError(f"{collection} records cannot be deleted")
        record = await self.store.delete(collection, ref_id)
        logger.info("Deleted %s %s", collection, record["id"])
        return record
