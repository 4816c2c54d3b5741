import asyncio

import pytest

from app.services.progress_engine import KeyedLocks


def scores(catalog, a=None, b=None):
    assessment = {}
    if a is not None:
        assessment[str(catalog.a["id"])] = a
    if b is not None:
        assessment[str(catalog.b["id"])] = b
    return assessment


async def cache_rows(services, catalog):
    return await services.store.find(
        "subject_progress", [{"$match": {"child_id": catalog.child["id"]}}]
    )


class TestKeyedLocks:
    async def test_serializes_same_key(self):
        locks = KeyedLocks()
        events = []

        async def worker(name):
            async with locks.hold("key"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
        assert len(locks) == 0

    async def test_different_keys_run_together(self):
        locks = KeyedLocks()
        inside = asyncio.Event()

        async def first():
            async with locks.hold("one"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with locks.hold("two"):
                inside.set()

        await asyncio.gather(first(), second())
        assert len(locks) == 0

    async def test_released_on_error(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("key"):
                raise RuntimeError("boom")
        assert len(locks) == 0


async def test_concurrent_reviews_unlock_once(services, catalog):
    achievement = await services.registry.create_achievement(
        "Arithmetic apprentice",
        {"type": "subject_level", "subject_id": str(catalog.subject["id"]), "min_level": 1},
    )

    results = await asyncio.gather(
        *(
            services.ingestion.submit_review(
                catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=7, b=7)
            )
            for _ in range(5)
        )
    )

    unlocked = [result.unlocked for result in results]
    assert sum(1 for found in unlocked if found == {achievement["id"]}) == 1
    assert await services.evaluator.unlocked_ids(catalog.child["id"]) == {achievement["id"]}
    progress = await services.aggregator.subject_progress(catalog.child["id"], catalog.subject["id"])
    assert progress.review_count == 5


async def test_recompute_without_cache_writes_nothing(services, catalog):
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=8, b=4)
    )
    assert await cache_rows(services, catalog) == []


async def test_recompute_updates_cache(services, catalog):
    services.progress.settings.progress_cache_enabled = True

    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=8, b=4)
    )
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 2.0, scores(catalog, a=6, b=6)
    )

    rows = await cache_rows(services, catalog)
    assert len(rows) == 1
    row = rows[0]
    assert row["subject_id"] == catalog.subject["id"]
    assert row["aggregate_score"] == pytest.approx(6.333333)
    assert row["level"] == 1
    assert row["review_count"] == 2
    assert row["scored_review_count"] == 2
    assert row["hours"] == 3.0
    assert row["version"] == 2


async def test_cached_progress_is_served_when_fresh(services, catalog):
    services.progress.settings.progress_cache_enabled = True
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=9)
    )
    # Tamper with the row; a fresh cache is trusted as-is
    row = (await cache_rows(services, catalog))[0]
    await services.store.update("subject_progress", row["id"], {"level": 5})

    progress = await services.progress.cached_child_progress(catalog.child["id"])
    assert progress[catalog.subject["id"]].level == 5


async def test_stale_cache_is_recomputed(services, catalog):
    services.progress.settings.progress_cache_enabled = True
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=9)
    )
    # A review stored without its recompute leaves the cache one behind
    await services.store.insert(
        "reviews",
        {
            "child_id": catalog.child["id"],
            "subject_id": catalog.subject["id"],
            "hours": 1.0,
            "assessment": scores(catalog, a=1),
        },
    )

    progress = await services.progress.cached_child_progress(catalog.child["id"])
    result = progress[catalog.subject["id"]]
    assert result.review_count == 2
    assert result.aggregate_score == 5.0
    assert result.level == 1

    row = (await cache_rows(services, catalog))[0]
    assert row["review_count"] == 2
    assert row["aggregate_score"] == 5.0


async def test_rebuild_replays_history(services, catalog):
    achievement = await services.registry.create_achievement(
        "Expert", {"type": "subject_level", "subject_id": str(catalog.subject["id"]), "min_level": 2}
    )
    for _ in range(2):
        await services.store.insert(
            "reviews",
            {
                "child_id": catalog.child["id"],
                "subject_id": catalog.subject["id"],
                "hours": 0.5,
                "assessment": scores(catalog, a=9, b=9),
            },
        )
    assert await services.evaluator.unlocked_ids(catalog.child["id"]) == set()

    assert await services.progress.rebuild(catalog.child["id"]) == {achievement["id"]}
    assert await services.progress.rebuild(catalog.child["id"]) == set()


async def test_rebuild_without_reviews(services, catalog):
    assert await services.progress.rebuild(catalog.child["id"]) == set()
