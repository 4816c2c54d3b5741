"""
Pytest Configuration and Fixtures

Every test gets its own SQLite database file, so nothing leaks between tests.
"""
import uuid
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.config import Settings
from app.core.database import init_db
from app.core.security import create_access_token
from app.main import create_app
from app.services.container import Services, build_services


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'progress.db'}",
        create_tables_on_startup=False,
        secret_key="test-secret",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def services(settings) -> AsyncGenerator[Services, None]:
    services = build_services(settings)
    await init_db(services.db_engine)
    yield services
    await services.db_engine.dispose()


@pytest_asyncio.fixture
async def app(settings):
    app = create_app(settings)
    await init_db(app.state.services.db_engine)
    yield app
    await app.state.services.db_engine.dispose()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def parent_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def auth_headers(parent_id, settings) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(parent_id, settings)}"}


async def build_catalog(services: Services, parent_id: uuid.UUID) -> SimpleNamespace:
    """
    Child C, subject S with criteria A (weight 2) and B (weight 1).
    Tiers: [0, 5) -> 0, [5, 8) -> 1, [8, max] -> 2.
    """
    registry = services.registry
    category = await registry.create_category("Mathematics")
    subject = await registry.create_subject(
        "Arithmetic",
        category["id"],
        level_thresholds=[
            {"min_score": 5, "inclusive": True, "name": "Apprentice"},
            {"min_score": 8, "inclusive": True, "name": "Expert"},
        ],
    )
    other_subject = await registry.create_subject("Reading", category["id"])
    criterion_a = await registry.create_criterion(subject["id"], "Accuracy", weight=2)
    criterion_b = await registry.create_criterion(subject["id"], "Speed", weight=1)
    reading = await registry.create_criterion(other_subject["id"], "Fluency")
    task = await registry.create_task(subject["id"], "Add two-digit numbers")
    child = await registry.create_child(parent_id, "Mia", age=7)
    return SimpleNamespace(
        category=category,
        subject=subject,
        other_subject=other_subject,
        a=criterion_a,
        b=criterion_b,
        reading=reading,
        task=task,
        child=child,
    )


@pytest_asyncio.fixture
async def catalog(services, parent_id) -> SimpleNamespace:
    return await build_catalog(services, parent_id)


@pytest_asyncio.fixture
async def api_catalog(app, parent_id) -> SimpleNamespace:
    """The same catalog, created inside the app under test."""
    return await build_catalog(app.state.services, parent_id)
