"""
Test fixtures shared across all RiskGuard tests.

Every test that touches the database gets its own SQLite file under
``tmp_path``; the API client overrides the session and pipeline dependencies
so the shared application engine is never used.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx  # noqa: E402
import pytest  # noqa: E402

from riskguard.api.dependencies import get_pipeline  # noqa: E402
from riskguard.api.main import app  # noqa: E402
from riskguard.config import ScoringConfig  # noqa: E402
from riskguard.models.database import (  # noqa: E402
    ClientCompany,
    build_engine,
    build_session_factory,
    create_tables,
    get_db,
)
from helpers import TENANT, build_pipeline  # noqa: E402


@pytest.fixture
def config():
    return ScoringConfig()


@pytest.fixture
async def engine(tmp_path):
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'riskguard-test.db'}")
    await create_tables(bind=db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def pipeline(config, session_factory):
    return build_pipeline(config, session_factory)


@pytest.fixture
def seed_company(session_factory):
    """Insert a client company directly; returns an async helper."""

    async def _seed(company_id="CMP-1", tenant_id=TENANT, name="Anadolu Gıda Ltd.", is_active=True):
        async with session_factory() as session:
            session.add(
                ClientCompany(
                    id=company_id,
                    tenant_id=tenant_id,
                    name=name,
                    party_name=name,
                    is_active=is_active,
                )
            )
            await session.commit()
        return company_id

    return _seed


@pytest.fixture
async def client(pipeline, session_factory):
    """HTTP client against the FastAPI app with test dependencies."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()
