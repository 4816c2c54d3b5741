"""
Service Container

Builds the engine components once per process and wires their
dependencies explicitly.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import Settings
from app.core.database import create_engine, create_session_maker
from app.services.achievements import AchievementEvaluator
from app.services.aggregator import ProgressAggregator
from app.services.entity_store import EntityStore
from app.services.ingestion import ReviewIngestion
from app.services.progress_engine import ProgressEngine
from app.services.queries import QueryFacade
from app.services.registry import EntityRegistry


@dataclass
class Services:
    db_engine: AsyncEngine
    store: EntityStore
    aggregator: ProgressAggregator
    evaluator: AchievementEvaluator
    progress: ProgressEngine
    ingestion: ReviewIngestion
    queries: QueryFacade
    registry: EntityRegistry


def build_services(settings: Settings, db_engine: AsyncEngine | None = None) -> Services:
    db_engine = db_engine or create_engine(settings.database_url)
    store = EntityStore(create_session_maker(db_engine))
    aggregator = ProgressAggregator(store, settings)
    evaluator = AchievementEvaluator(store, aggregator)
    progress = ProgressEngine(store, aggregator, evaluator, settings)
    return Services(
        db_engine=db_engine,
        store=store,
        aggregator=aggregator,
        evaluator=evaluator,
        progress=progress,
        ingestion=ReviewIngestion(store, progress, settings),
        queries=QueryFacade(store, aggregator, evaluator, progress, settings),
        registry=EntityRegistry(store, settings),
    )
