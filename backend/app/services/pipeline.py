"""
Aggregation Pipeline

Evaluates a declarative read pipeline over plain dict documents.
Stages run in order; each one takes the previous stage's output:

    [{"$match": {"child_id": cid, "hours": {"$gte": 1}}},
     {"$group": {"_id": "$subject_id", "hours": {"$sum": "$hours"}, "reviews": {"$sum": 1}}},
     {"$sort": {"hours": -1}},
     {"$project": {"_id": 1, "hours": 1}}]

An empty pipeline returns the documents untouched. The entity store pushes
leading ``$match`` stages down to SQL and hands the rest to ``run_pipeline``.
"""

import math
import uuid
from typing import Any, Callable, Iterable, Mapping, Sequence

from app.core.errors import InvalidPipeline

Document = dict[str, Any]
Pipeline = Sequence[Mapping[str, Any]]

COMPARISON_OPERATORS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists")


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path ("assessment.<criterion id>") against a document."""
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value


def _has_path(document: Mapping[str, Any], path: str) -> bool:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return False
        value = value[part]
    return True


def _normalize(left: Any, right: Any) -> tuple[Any, Any]:
    # UUID columns may be filtered with their string form
    if isinstance(left, uuid.UUID) and isinstance(right, str):
        return str(left), right
    if isinstance(right, uuid.UUID) and isinstance(left, str):
        return left, str(right)
    return left, right


def _equals(left: Any, right: Any) -> bool:
    left, right = _normalize(left, right)
    return left == right


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        left, right = _normalize(left, right)
        try:
            return op(left, right)
        except TypeError:
            return False

    return compare


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": _equals,
    "$ne": lambda left, right: not _equals(left, right),
    "$gt": _ordered(lambda a, b: a > b),
    "$gte": _ordered(lambda a, b: a >= b),
    "$lt": _ordered(lambda a, b: a < b),
    "$lte": _ordered(lambda a, b: a <= b),
    "$in": lambda left, right: any(_equals(left, item) for item in _as_list(right)),
    "$nin": lambda left, right: not any(_equals(left, item) for item in _as_list(right)),
}


def _as_list(value: Any) -> list:
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidPipeline("$in/$nin expect a list")
    return list(value)


def is_operator_condition(condition: Any) -> bool:
    return (
        isinstance(condition, Mapping)
        and bool(condition)
        and all(isinstance(key, str) and key.startswith("$") for key in condition)
    )


def matches(document: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """Return True if the document satisfies a $match query."""
    for field, condition in query.items():
        if field == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
            continue
        if field == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
            continue
        if field.startswith("$"):
            raise InvalidPipeline(f"Unsupported query operator: {field}")

        value = get_path(document, field)
        if is_operator_condition(condition):
            for op, operand in condition.items():
                if op == "$exists":
                    if _has_path(document, field) != bool(operand):
                        return False
                    continue
                if op not in _OPERATORS:
                    raise InvalidPipeline(f"Unsupported comparison operator: {op}")
                if not _OPERATORS[op](value, operand):
                    return False
        elif not _equals(value, condition):
            return False
    return True


def evaluate(document: Mapping[str, Any], expression: Any) -> Any:
    """Evaluate a field reference ("$hours"), a dict of expressions, or a constant."""
    if isinstance(expression, str) and expression.startswith("$"):
        return get_path(document, expression[1:])
    if isinstance(expression, Mapping):
        return {key: evaluate(document, value) for key, value in expression.items()}
    return expression


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((key, _freeze(item)) for key, item in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _numbers(values: Iterable[Any]) -> list[float]:
    return [
        value
        for value in values
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    ]


def _sum(values: list[Any]) -> float:
    numbers = _numbers(values)
    if all(isinstance(number, int) for number in numbers):
        return sum(numbers)
    return math.fsum(numbers)


def _avg(values: list[Any]) -> float | None:
    numbers = _numbers(values)
    return math.fsum(numbers) / len(numbers) if numbers else None


def _min(values: list[Any]) -> Any:
    present = [value for value in values if value is not None]
    return min(present) if present else None


def _max(values: list[Any]) -> Any:
    present = [value for value in values if value is not None]
    return max(present) if present else None


ACCUMULATORS: dict[str, Callable[[list[Any]], Any]] = {
    "$sum": _sum,
    "$avg": _avg,
    "$min": _min,
    "$max": _max,
    "$push": list,
    "$first": lambda values: values[0] if values else None,
    "$count": len,
}


def _group(documents: list[Document], spec: Mapping[str, Any]) -> list[Document]:
    if "_id" not in spec:
        raise InvalidPipeline("$group requires an _id expression")

    accumulators: dict[str, tuple[str, Any]] = {}
    for field, accumulator in spec.items():
        if field == "_id":
            continue
        if not isinstance(accumulator, Mapping) or len(accumulator) != 1:
            raise InvalidPipeline(f"$group field {field!r} needs exactly one accumulator")
        ((op, expression),) = accumulator.items()
        if op not in ACCUMULATORS:
            raise InvalidPipeline(f"Unsupported accumulator: {op}")
        accumulators[field] = (op, expression)

    buckets: dict[Any, tuple[Any, list[Document]]] = {}
    for document in documents:
        key = evaluate(document, spec["_id"])
        buckets.setdefault(_freeze(key), (key, []))[1].append(document)

    grouped = []
    for key, members in buckets.values():
        row: Document = {"_id": key}
        for field, (op, expression) in accumulators.items():
            values = [evaluate(member, expression) for member in members]
            row[field] = ACCUMULATORS[op](values)
        grouped.append(row)
    return grouped


def _project(documents: list[Document], spec: Mapping[str, Any]) -> list[Document]:
    includes: dict[str, Any] = {}
    excludes: set[str] = set()
    for field, value in spec.items():
        if isinstance(value, str) and value.startswith("$"):
            includes[field] = value
        elif value is True or value == 1:
            includes[field] = 1
        elif value is False or value == 0:
            excludes.add(field)
        else:
            raise InvalidPipeline(f"Unsupported $project value for {field!r}")

    if includes and excludes - {"id", "_id"}:
        raise InvalidPipeline("$project cannot mix inclusion and exclusion")

    projected = []
    for document in documents:
        if includes:
            row: Document = {}
            for key in ("id", "_id"):
                if key in document and key not in excludes:
                    row[key] = document[key]
            for field, value in includes.items():
                row[field] = evaluate(document, value) if isinstance(value, str) else get_path(document, field)
        else:
            row = {key: value for key, value in document.items() if key not in excludes}
        projected.append(row)
    return projected


def _sort(documents: list[Document], spec: Mapping[str, Any]) -> list[Document]:
    ordered = list(documents)
    # Stable sort: apply keys from least to most significant
    for field, direction in reversed(list(spec.items())):
        if direction not in (1, -1):
            raise InvalidPipeline(f"$sort direction for {field!r} must be 1 or -1")
        try:
            ordered.sort(
                key=lambda doc: (get_path(doc, field) is not None, _sortable(get_path(doc, field))),
                reverse=direction == -1,
            )
        except TypeError as exc:
            raise InvalidPipeline(f"$sort field {field!r} holds values that cannot be compared") from exc
    return ordered


def _sortable(value: Any) -> Any:
    if value is None:
        return 0
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def _limit(documents: list[Document], spec: Any) -> list[Document]:
    if not isinstance(spec, int) or isinstance(spec, bool) or spec < 0:
        raise InvalidPipeline("$limit expects a non-negative integer")
    return documents[:spec]


STAGES: dict[str, Callable[[list[Document], Any], list[Document]]] = {
    "$match": lambda documents, query: [doc for doc in documents if matches(doc, query)],
    "$group": _group,
    "$project": _project,
    "$sort": _sort,
    "$limit": _limit,
}


def stage_of(stage: Mapping[str, Any]) -> tuple[str, Any]:
    if not isinstance(stage, Mapping) or len(stage) != 1:
        raise InvalidPipeline("Each pipeline stage must have exactly one operator")
    ((name, spec),) = stage.items()
    if name not in STAGES:
        raise InvalidPipeline(f"Unsupported pipeline stage: {name}")
    return name, spec


def run_pipeline(documents: Iterable[Document], pipeline: Pipeline | None = None) -> list[Document]:
    """Run every stage of the pipeline over the documents."""
    result = list(documents)
    for stage in pipeline or []:
        name, spec = stage_of(stage)
        result = STAGES[name](result, spec)
    return result
