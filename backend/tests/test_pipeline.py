import uuid

import pytest

from app.core.errors import InvalidPipeline
from app.services.pipeline import get_path, matches, run_pipeline

SUBJECT_A = uuid.uuid4()
SUBJECT_B = uuid.uuid4()

REVIEWS = [
    {"id": 1, "subject_id": SUBJECT_A, "hours": 1.5, "assessment": {"x": 8}},
    {"id": 2, "subject_id": SUBJECT_A, "hours": 0.5, "assessment": {"x": 4}},
    {"id": 3, "subject_id": SUBJECT_B, "hours": 2.0, "assessment": {}},
    {"id": 4, "subject_id": SUBJECT_B, "hours": None, "assessment": {"y": 10}},
]


def test_empty_pipeline_returns_everything():
    assert run_pipeline(REVIEWS, []) == REVIEWS
    assert run_pipeline(REVIEWS, None) == REVIEWS


def test_match_equality_and_operators():
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": {"subject_id": SUBJECT_A}}])] == [1, 2]
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": {"hours": {"$gte": 1.5}}}])] == [1, 3]
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": {"id": {"$in": [2, 4]}}}])] == [2, 4]
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": {"id": {"$nin": [2, 4]}}}])] == [1, 3]
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": {"hours": None}}])] == [4]


def test_match_uuid_against_string():
    assert matches(REVIEWS[0], {"subject_id": str(SUBJECT_A)})
    assert not matches(REVIEWS[0], {"subject_id": str(SUBJECT_B)})


def test_match_dotted_path_and_exists():
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": {"assessment.x": {"$gt": 5}}}])] == [1]
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": {"assessment.y": {"$exists": True}}}])] == [4]


def test_match_or():
    query = {"$or": [{"id": 1}, {"hours": {"$gt": 1.9}}]}
    assert [d["id"] for d in run_pipeline(REVIEWS, [{"$match": query}])] == [1, 3]


def test_group_with_accumulators():
    result = run_pipeline(
        REVIEWS,
        [
            {
                "$group": {
                    "_id": "$subject_id",
                    "reviews": {"$sum": 1},
                    "hours": {"$sum": "$hours"},
                    "avg_hours": {"$avg": "$hours"},
                    "ids": {"$push": "$id"},
                }
            },
            {"$sort": {"reviews": -1}},
        ],
    )
    by_subject = {row["_id"]: row for row in result}
    assert by_subject[SUBJECT_A] == {
        "_id": SUBJECT_A,
        "reviews": 2,
        "hours": 2.0,
        "avg_hours": 1.0,
        "ids": [1, 2],
    }
    # None hours are skipped by $avg and count as nothing in $sum
    assert by_subject[SUBJECT_B]["hours"] == 2.0
    assert by_subject[SUBJECT_B]["avg_hours"] == 2.0


def test_group_everything_into_one_bucket():
    [row] = run_pipeline(REVIEWS, [{"$group": {"_id": None, "max_id": {"$max": "$id"}}}])
    assert row == {"_id": None, "max_id": 4}


def test_project_include_rename_and_exclude():
    [row] = run_pipeline(REVIEWS[:1], [{"$project": {"hours": 1, "subject": "$subject_id"}}])
    assert row == {"id": 1, "hours": 1.5, "subject": SUBJECT_A}

    [row] = run_pipeline(REVIEWS[:1], [{"$project": {"assessment": 0, "subject_id": 0}}])
    assert row == {"id": 1, "hours": 1.5}


def test_sort_and_limit():
    result = run_pipeline(REVIEWS, [{"$sort": {"hours": -1}}, {"$limit": 2}])
    assert [d["id"] for d in result] == [3, 1]


def test_sort_puts_missing_values_first_ascending():
    result = run_pipeline(REVIEWS, [{"$sort": {"hours": 1}}])
    assert [d["id"] for d in result] == [4, 2, 1, 3]


def test_sort_on_mixed_types_is_rejected():
    documents = [{"label": "b"}, {"label": 3}, {"label": None}]
    with pytest.raises(InvalidPipeline):
        run_pipeline(documents, [{"$sort": {"label": 1}}])


@pytest.mark.parametrize(
    "pipeline",
    [
        [{"$unwind": "$ids"}],
        [{"$match": {"id": 1}, "$limit": 1}],
        [{"$match": {"id": {"$regex": "x"}}}],
        [{"$group": {"total": {"$sum": 1}}}],
        [{"$group": {"_id": None, "total": {"$median": "$hours"}}}],
        [{"$project": {"id": 1, "hours": 0}}],
        [{"$limit": -1}],
        [{"$sort": {"id": 0}}],
    ],
)
def test_invalid_pipelines_are_rejected(pipeline):
    with pytest.raises(InvalidPipeline):
        run_pipeline(REVIEWS, pipeline)


def test_get_path():
    assert get_path({"a": {"b": 2}}, "a.b") == 2
    assert get_path({"a": {"b": 2}}, "a.c") is None
    assert get_path({"a": 1}, "a.b") is None
