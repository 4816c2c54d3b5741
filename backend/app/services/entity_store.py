"""
Entity Store

Generic create/read/list access to every collection of the progress engine,
backed by the SQLAlchemy async ORM.

- ``insert`` validates referential fields before writing and commits each
  document in its own transaction.
- ``find`` accepts a declarative pipeline (see ``app.services.pipeline``);
  leading ``$match`` stages are compiled to SQL, the rest runs in Python.
- Driver-level connection failures surface as ``StorageUnavailable``.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

from sqlalchemy import Uuid, and_, false, or_, select, true, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.inspection import inspect

from app.core.database import Base, utcnow
from app.core.errors import (
    DuplicateRecord,
    ImmutableRecord,
    InvalidInput,
    ReferenceNotFound,
    StorageUnavailable,
)
from app.models import (
    Achievement,
    Category,
    Child,
    ChildAchievement,
    Criterion,
    Review,
    Subject,
    SubjectProgress,
    Task,
)
from app.services.pipeline import Document, Pipeline, is_operator_condition, run_pipeline, stage_of

logger = logging.getLogger(__name__)


COLLECTIONS: dict[str, type[Base]] = {
    "categories": Category,
    "subjects": Subject,
    "criteria": Criterion,
    "tasks": Task,
    "children": Child,
    "reviews": Review,
    "achievements": Achievement,
    "child_achievements": ChildAchievement,
    "subject_progress": SubjectProgress,
}

# field -> collection it must resolve in (live records only)
REFERENCES: dict[str, dict[str, str]] = {
    "subjects": {"category_id": "categories"},
    "criteria": {"subject_id": "subjects"},
    "tasks": {"subject_id": "subjects"},
    "reviews": {"child_id": "children", "subject_id": "subjects", "task_id": "tasks"},
    "child_achievements": {"child_id": "children", "achievement_id": "achievements"},
    "subject_progress": {"child_id": "children", "subject_id": "subjects"},
}

# Append-only history
IMMUTABLE = frozenset({"reviews", "child_achievements"})


class _NotPushable(Exception):
    pass


def model_for(collection: str) -> type[Base]:
    if collection not in COLLECTIONS:
        raise ValueError(
            f"Unknown collection: {collection}. "
            f"Available collections: {', '.join(COLLECTIONS)}"
        )
    return COLLECTIONS[collection]


def to_document(row: Base) -> Document:
    """Flatten an ORM row into a plain dict keyed by column name."""
    return {attr.key: getattr(row, attr.key) for attr in inspect(type(row)).column_attrs}


def _column_names(model: type[Base]) -> set[str]:
    return {attr.key for attr in inspect(model).column_attrs}


def _is_uuid_column(model: type[Base], field: str) -> bool:
    return isinstance(inspect(model).columns[field].type, Uuid)


def parse_id(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _uuid_operand(op: str, operand: Any) -> Any:
    if op in ("$in", "$nin"):
        if not isinstance(operand, (list, tuple, set, frozenset)):
            raise _NotPushable
        parsed = []
        for item in operand:
            if item is None:
                parsed.append(None)
                continue
            item_id = parse_id(item)
            # Unparseable ids can never match a UUID column
            if item_id is not None:
                parsed.append(item_id)
        return parsed
    if operand is None:
        return None
    parsed_id = parse_id(operand)
    if parsed_id is None:
        # Leave it to the Python evaluator
        raise _NotPushable
    return parsed_id


def _clause(model: type[Base], field: str, op: str, operand: Any):
    column = getattr(model, field)
    if _is_uuid_column(model, field) and op != "$exists":
        operand = _uuid_operand(op, operand)

    if op == "$eq":
        return column.is_(None) if operand is None else column == operand
    if op == "$ne":
        return column.is_not(None) if operand is None else or_(column != operand, column.is_(None))
    if op in ("$gt", "$gte", "$lt", "$lte"):
        if operand is None:
            return false()
        return {
            "$gt": column > operand,
            "$gte": column >= operand,
            "$lt": column < operand,
            "$lte": column <= operand,
        }[op]
    if op == "$in":
        if not isinstance(operand, (list, tuple, set, frozenset)):
            raise _NotPushable
        values = [item for item in operand if item is not None]
        clause = column.in_(values)
        return or_(clause, column.is_(None)) if len(values) != len(list(operand)) else clause
    if op == "$nin":
        if not isinstance(operand, (list, tuple, set, frozenset)):
            raise _NotPushable
        values = [item for item in operand if item is not None]
        if len(values) != len(list(operand)):
            return and_(column.not_in(values), column.is_not(None))
        return or_(column.not_in(values), column.is_(None))
    if op == "$exists":
        # Every column exists on every row
        return true() if operand else false()
    raise _NotPushable


def compile_match(model: type[Base], query: Mapping[str, Any]) -> list:
    """Translate a $match query into SQL where-clauses, or raise _NotPushable."""
    columns = _column_names(model)
    clauses = []
    for field, condition in query.items():
        if field.startswith("$") or field not in columns:
            raise _NotPushable
        operators = condition if is_operator_condition(condition) else {"$eq": condition}
        for op, operand in operators.items():
            clauses.append(_clause(model, field, op, operand))
    return clauses


class EntityStore:
    """Persistence for every engine collection. One transaction per call."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as exc:
            logger.error("Entity store unavailable: %s", exc)
            raise StorageUnavailable("Entity store is unavailable") from exc

    def _coerce(self, collection: str, model: type[Base], document: Mapping[str, Any]) -> dict[str, Any]:
        columns = _column_names(model)
        references = REFERENCES.get(collection, {})
        values: dict[str, Any] = {}
        for field, value in document.items():
            if field not in columns:
                raise InvalidInput(f"Unknown field for {collection}: {field}")
            if value is not None and _is_uuid_column(model, field):
                parsed = parse_id(value)
                if parsed is None:
                    if field in references:
                        raise ReferenceNotFound(references[field], value)
                    raise InvalidInput(f"Invalid id for {collection}.{field}: {value}")
                value = parsed
            values[field] = value
        return values

    async def _check_references(
        self, session: AsyncSession, collection: str, values: Mapping[str, Any]
    ) -> None:
        for field, target in REFERENCES.get(collection, {}).items():
            ref_id = values.get(field)
            if ref_id is None:
                continue
            row = await session.get(model_for(target), ref_id)
            if row is None or getattr(row, "deleted_at", None) is not None:
                raise ReferenceNotFound(target, ref_id)

    async def insert(self, collection: str, document: Mapping[str, Any]) -> Document:
        """Validate references and persist one document atomically."""
        model = model_for(collection)
        values = self._coerce(collection, model, document)
        async with self.session() as session:
            await self._check_references(session, collection, values)
            row = model(**values)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecord(f"{collection} record conflicts with an existing one") from exc
            return to_document(row)

    async def get(self, collection: str, ref_id: Any, include_deleted: bool = False) -> Document | None:
        model = model_for(collection)
        parsed = parse_id(ref_id)
        if parsed is None:
            return None
        async with self.session() as session:
            row = await session.get(model, parsed)
        if row is None:
            return None
        if not include_deleted and getattr(row, "deleted_at", None) is not None:
            return None
        return to_document(row)

    async def require(self, collection: str, ref_id: Any, include_deleted: bool = False) -> Document:
        """Like ``get`` but raises ``ReferenceNotFound`` for missing ids."""
        document = await self.get(collection, ref_id, include_deleted=include_deleted)
        if document is None:
            raise ReferenceNotFound(collection, ref_id)
        return document

    async def find(
        self,
        collection: str,
        pipeline: Pipeline | None = None,
        include_deleted: bool = False,
    ) -> list[Document]:
        """
        List a collection through an aggregation pipeline.

        An empty pipeline returns every live document in creation order.
        Soft-deleted documents are skipped unless ``include_deleted`` is set
        or a leading ``$match`` filters on ``deleted_at`` itself.
        """
        model = model_for(collection)
        remaining = list(pipeline or [])
        clauses = []
        filters_deleted = False
        while remaining:
            name, spec = stage_of(remaining[0])
            if name != "$match":
                break
            try:
                clauses.extend(compile_match(model, spec))
            except _NotPushable:
                break
            filters_deleted = filters_deleted or "deleted_at" in spec
            remaining.pop(0)

        stmt = select(model).where(*clauses)
        if not (include_deleted or filters_deleted) and hasattr(model, "deleted_at"):
            stmt = stmt.where(model.deleted_at.is_(None))
        stmt = stmt.order_by(model.created_at, model.id)

        async with self.session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        return run_pipeline((to_document(row) for row in rows), remaining)

    async def update(
        self,
        collection: str,
        ref_id: Any,
        values: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> Document | None:
        """
        Update one document in place.

        With ``expected_version`` the write only applies if the stored version
        still matches (and bumps it); returns None on a version conflict.
        """
        if collection in IMMUTABLE:
            raise ImmutableRecord(f"{collection} records cannot be modified")
        model = model_for(collection)
        parsed = parse_id(ref_id)
        if parsed is None:
            raise ReferenceNotFound(collection, ref_id)
        changes = self._coerce(collection, model, values)

        stmt = update(model).where(model.id == parsed)
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)
            changes["version"] = expected_version + 1

        async with self.session() as session:
            result = await session.execute(stmt.values(**changes))
            await session.commit()

        if result.rowcount == 0:
            if expected_version is None:
                raise ReferenceNotFound(collection, ref_id)
            return None
        return await self.get(collection, parsed, include_deleted=True)

    async def delete(self, collection: str, ref_id: Any) -> Document:
        """Soft-delete where the record supports it, hard-delete otherwise."""
        if collection in IMMUTABLE:
            raise ImmutableRecord(f"{collection} records cannot be deleted")
        model = model_for(collection)
        parsed = parse_id(ref_id)
        if parsed is None:
            raise ReferenceNotFound(collection, ref_id)

        async with self.session() as session:
            row = await session.get(model, parsed)
            if row is None or getattr(row, "deleted_at", None) is not None:
                raise ReferenceNotFound(collection, ref_id)
            if hasattr(row, "deleted_at"):
                row.deleted_at = utcnow()
            else:
                await session.delete(row)
            await session.commit()
            return to_document(row)
