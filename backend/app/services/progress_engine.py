"""
Progress Engine

Runs the read-modify-write recomputation that follows every review:
read history -> aggregate -> (optionally) persist the cache row -> evaluate
achievements. Runs for the same (child, subject) key are serialized with an
in-process lock; the cache row additionally carries a version for
optimistic concurrency across processes.

Derived state is always reconstructible from review history, so a failure
here never invalidates a stored review.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings
from app.core.errors import DuplicateRecord, ProgressError
from app.services.achievements import AchievementEvaluator
from app.services.aggregator import ProgressAggregator, SubjectProgressResult
from app.services.entity_store import EntityStore

logger = logging.getLogger(__name__)

MAX_CACHE_RETRIES = 3


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class ProgressEngine:
    def __init__(
        self,
        store: EntityStore,
        aggregator: ProgressAggregator,
        evaluator: AchievementEvaluator,
        settings: Settings,
    ):
        self.store = store
        self.aggregator = aggregator
        self.evaluator = evaluator
        self.settings = settings
        self.locks = KeyedLocks()

    async def recompute(self, child_id: uuid.UUID, subject_id: uuid.UUID) -> set[uuid.UUID]:
        """Recompute one (child, subject) pair and return newly unlocked achievements."""
        async with self.locks.hold((child_id, subject_id)):
            progress = await self.aggregator.subject_progress(child_id, subject_id)
            if self.settings.progress_cache_enabled:
                await self._store_progress(child_id, progress)
            logger.debug(
                "Recomputed child=%s subject=%s score=%s level=%s",
                child_id, subject_id, progress.aggregate_score, progress.level,
            )
            return await self.evaluator.evaluate(child_id)

    async def recompute_safely(
        self, child_id: uuid.UUID, subject_id: uuid.UUID
    ) -> set[uuid.UUID] | None:
        """
        Recompute after a review write. Failures are logged, not raised: the
        review is already durable and the next read or write retries.
        """
        try:
            return await self.recompute(child_id, subject_id)
        except (ProgressError, SQLAlchemyError):
            logger.exception(
                "Recompute failed for child=%s subject=%s; will retry on next access",
                child_id, subject_id,
            )
            return None

    async def rebuild(self, child_id: uuid.UUID) -> set[uuid.UUID]:
        """Replay every reviewed subject of a child."""
        child = await self.store.require("children", child_id)
        progress = await self.aggregator.child_progress(child["id"])
        unlocked: set[uuid.UUID] = set()
        for subject_id in progress:
            unlocked |= await self.recompute(child["id"], subject_id)
        return unlocked

    async def _store_progress(self, child_id: uuid.UUID, progress: SubjectProgressResult) -> None:
        values = {
            "aggregate_score": progress.aggregate_score,
            "level": progress.level,
            "review_count": progress.review_count,
            "scored_review_count": progress.scored_review_count,
            "hours": progress.hours,
        }
        for _ in range(MAX_CACHE_RETRIES):
            rows = await self.store.find(
                "subject_progress",
                [{"$match": {"child_id": child_id, "subject_id": progress.subject_id}}],
            )
            if not rows:
                try:
                    await self.store.insert(
                        "subject_progress",
                        {"child_id": child_id, "subject_id": progress.subject_id, **values},
                    )
                    return
                except DuplicateRecord:
                    continue
            row = rows[0]
            if await self.store.update("subject_progress", row["id"], values, expected_version=row["version"]):
                return
            logger.debug("Version conflict on progress cache %s, retrying", row["id"])
        logger.warning(
            "Gave up caching progress for child=%s subject=%s after %d conflicts",
            child_id, progress.subject_id, MAX_CACHE_RETRIES,
        )

    async def cached_child_progress(self, child_id: uuid.UUID) -> dict[uuid.UUID, SubjectProgressResult]:
        """
        Child progress served from the cache where it is still fresh.

        A cache row is fresh when its review count matches the live history;
        stale or missing rows are recomputed and rewritten.
        """
        counts = await self.store.find(
            "reviews",
            [
                {"$match": {"child_id": child_id}},
                {"$group": {"_id": "$subject_id", "reviews": {"$sum": 1}}},
            ],
        )
        live_counts = {row["_id"]: row["reviews"] for row in counts}
        cached = {
            row["subject_id"]: row
            for row in await self.store.find("subject_progress", [{"$match": {"child_id": child_id}}])
        }
        subjects = await self.store.find(
            "subjects", [{"$match": {"id": {"$in": list(live_counts)}}}]
        )

        results: dict[uuid.UUID, SubjectProgressResult] = {}
        for subject_id in (subject["id"] for subject in subjects):
            row = cached.get(subject_id)
            if row is not None and row["review_count"] == live_counts[subject_id]:
                results[subject_id] = SubjectProgressResult(
                    subject_id=subject_id,
                    aggregate_score=row["aggregate_score"],
                    level=row["level"],
                    review_count=row["review_count"],
                    scored_review_count=row["scored_review_count"],
                    hours=row["hours"],
                )
                continue
            async with self.locks.hold((child_id, subject_id)):
                progress = await self.aggregator.subject_progress(child_id, subject_id)
                await self._store_progress(child_id, progress)
            results[subject_id] = progress
        return results
