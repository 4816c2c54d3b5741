import uuid

import pytest

from app.core.errors import InvalidHours, InvalidInput, ReferenceNotFound, ScoreOutOfRange, UnknownCriterion


def scores(catalog, a=None, b=None):
    assessment = {}
    if a is not None:
        assessment[str(catalog.a["id"])] = a
    if b is not None:
        assessment[str(catalog.b["id"])] = b
    return assessment


async def review_count(services):
    return len(await services.store.find("reviews"))


async def test_submit_review_persists_and_recomputes(services, catalog):
    result = await services.ingestion.submit_review(
        catalog.child["id"],
        catalog.subject["id"],
        1.5,
        scores(catalog, a=8, b=4),
        task_id=catalog.task["id"],
    )

    assert isinstance(result.review["id"], uuid.UUID)
    assert result.review["created_at"] is not None
    assert result.review["task_id"] == catalog.task["id"]
    assert result.review["assessment"] == {str(catalog.a["id"]): 8, str(catalog.b["id"]): 4}
    assert result.unlocked == set()
    assert await review_count(services) == 1


async def test_scenario_levels_after_two_reviews(services, catalog):
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=8, b=4)
    )
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=6, b=6)
    )

    progress = await services.aggregator.subject_progress(catalog.child["id"], catalog.subject["id"])
    assert progress.aggregate_score == pytest.approx(6.33, abs=0.01)
    assert progress.level == 1
    assert await services.aggregator.level_map(catalog.child["id"]) == {catalog.subject["id"]: 1}


async def test_accepts_string_ids(services, catalog):
    result = await services.ingestion.submit_review(
        str(catalog.child["id"]), str(catalog.subject["id"]), 0, scores(catalog, a=3)
    )
    assert result.review["child_id"] == catalog.child["id"]


async def test_criterion_from_another_subject_is_rejected(services, catalog):
    with pytest.raises(UnknownCriterion):
        await services.ingestion.submit_review(
            catalog.child["id"],
            catalog.subject["id"],
            1.0,
            {str(catalog.a["id"]): 5, str(catalog.reading["id"]): 5},
        )
    assert await review_count(services) == 0


async def test_garbage_criterion_key_is_rejected(services, catalog):
    with pytest.raises(UnknownCriterion):
        await services.ingestion.submit_review(
            catalog.child["id"], catalog.subject["id"], 1.0, {"accuracy": 5}
        )
    assert await review_count(services) == 0


async def test_same_criterion_spelled_twice_is_rejected(services, catalog):
    key = str(catalog.a["id"])
    with pytest.raises(InvalidInput):
        await services.ingestion.submit_review(
            catalog.child["id"], catalog.subject["id"], 1.0, {key.lower(): 2, key.upper(): 9}
        )
    assert await review_count(services) == 0


async def test_deleted_criterion_is_rejected(services, catalog):
    await services.registry.delete("criteria", catalog.b["id"])
    with pytest.raises(UnknownCriterion):
        await services.ingestion.submit_review(
            catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, b=5)
        )


@pytest.mark.parametrize("score", [-0.1, 10.01, float("nan"), float("inf"), "7", True])
async def test_score_out_of_range_is_rejected(services, catalog, score):
    with pytest.raises(ScoreOutOfRange):
        await services.ingestion.submit_review(
            catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=score)
        )
    assert await review_count(services) == 0


@pytest.mark.parametrize("score", [0, 10, 10.0])
async def test_scores_on_range_edges_are_accepted(services, catalog, score):
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=score)
    )
    assert await review_count(services) == 1


@pytest.mark.parametrize("hours", [-1, float("nan")])
async def test_bad_hours_are_rejected(services, catalog, hours):
    with pytest.raises(InvalidHours):
        await services.ingestion.submit_review(
            catalog.child["id"], catalog.subject["id"], hours, scores(catalog, a=5)
        )
    assert await review_count(services) == 0


async def test_unknown_child_or_subject(services, catalog):
    with pytest.raises(ReferenceNotFound):
        await services.ingestion.submit_review(uuid.uuid4(), catalog.subject["id"], 1.0, {})
    with pytest.raises(ReferenceNotFound):
        await services.ingestion.submit_review(catalog.child["id"], uuid.uuid4(), 1.0, {})
    assert await review_count(services) == 0


async def test_deleted_child_cannot_be_reviewed(services, catalog):
    await services.registry.delete("children", catalog.child["id"])
    with pytest.raises(ReferenceNotFound):
        await services.ingestion.submit_review(
            catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=5)
        )


async def test_task_must_belong_to_subject(services, catalog):
    other_task = await services.registry.create_task(catalog.other_subject["id"], "Read a page")
    with pytest.raises(ReferenceNotFound):
        await services.ingestion.submit_review(
            catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=5), task_id=other_task["id"]
        )
    assert await review_count(services) == 0


async def test_subject_without_criteria_cannot_be_reviewed(services, catalog):
    empty = await services.registry.create_subject("Music", catalog.category["id"])
    with pytest.raises(UnknownCriterion):
        await services.ingestion.submit_review(catalog.child["id"], empty["id"], 1.0, {})


async def test_empty_assessment_is_stored_but_not_scored(services, catalog):
    await services.ingestion.submit_review(catalog.child["id"], catalog.subject["id"], 2.0, {})
    await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=9, b=6)
    )

    progress = await services.aggregator.subject_progress(catalog.child["id"], catalog.subject["id"])
    assert progress.aggregate_score == 8.0
    assert progress.review_count == 2
    assert progress.scored_review_count == 1
    assert progress.hours == 3.0


async def test_deferred_mode_schedules_recompute(services, catalog):
    services.ingestion.settings.recompute_mode = "deferred"
    scheduled = []

    result = await services.ingestion.submit_review(
        catalog.child["id"],
        catalog.subject["id"],
        1.0,
        scores(catalog, a=5),
        schedule=lambda func, *args: scheduled.append((func, args)),
    )

    assert result.unlocked is None
    assert len(scheduled) == 1
    func, args = scheduled[0]
    assert args == (catalog.child["id"], catalog.subject["id"])
    assert await func(*args) == set()


async def test_recompute_failure_keeps_the_review(services, catalog, monkeypatch):
    async def broken(child_id):
        raise ReferenceNotFound("achievements", "boom")

    monkeypatch.setattr(services.evaluator, "evaluate", broken)

    result = await services.ingestion.submit_review(
        catalog.child["id"], catalog.subject["id"], 1.0, scores(catalog, a=5)
    )
    assert result.unlocked is None
    assert await review_count(services) == 1
