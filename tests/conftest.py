"""
Pytest configuration and fixtures for testing
"""
import asyncio
import os

os.environ.setdefault("AUTH_JWT_SECRET", "test-session-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_sql_app.db")
os.environ.setdefault("ENV", "test")

from datetime import timedelta  # noqa: E402
from typing import List, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from auth_utils import create_jwt  # noqa: E402
from database import get_db, Base, engine_options  # noqa: E402
from models.analysis_models import AnalysisResult, ChatAnswer  # noqa: E402
from services.blob_service import BlobStore  # noqa: E402
from utils.dependencies import get_analyzer, get_blob_store  # noqa: E402
from utils.rate_limit import FixedWindowRateLimiter  # noqa: E402


SAMPLE_ANALYSIS = {
    "overall_risk_score": 72,
    "summary": "Service agreement with one-sided termination and uncapped liability.",
    "key_findings": ["Uncapped liability", "Termination without notice", "No data protection clause"],
    "risk_clauses": [
        {
            "clause_text": f"Clause {i}: the provider may terminate at any time.",
            "risk_level": level,
            "risk_category": "termination",
            "explanation": "One-sided termination right.",
            "recommendation": "Require 30 days written notice.",
            "location": f"Section {i}",
        }
        for i, level in enumerate(["high", "critical", "medium", "low", "high"], start=1)
    ],
    "missing_clauses": [
        {
            "clause_type": clause_type,
            "importance": importance,
            "description": f"No {clause_type} clause.",
            "suggested_text": f"The parties agree to {clause_type} terms.",
            "legal_impact": "Exposure in disputes.",
        }
        for clause_type, importance in [
            ("limitation_of_liability", "critical"),
            ("data_protection", "high"),
            ("force_majeure", "medium"),
            ("dispute_resolution", "medium"),
        ]
    ],
    "recommendations": ["Cap liability", "Add notice period", "Add a DPA"],
}


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis covering the calls the app makes."""

    def __init__(self, fail: bool = False):
        self.values = {}
        self.ttls = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            from redis.exceptions import ConnectionError
            raise ConnectionError("redis unavailable")

    async def incr(self, key):
        self._check()
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return True

    async def ping(self):
        self._check()
        return True

    def expire_all(self):
        """Simulate every window elapsing."""
        for key in list(self.ttls):
            self.values.pop(key, None)
            self.ttls.pop(key, None)


class FakeAnalyzer:
    """Stand-in for ContractAnalyzer with a scripted reply."""

    model = "fake-model"

    def __init__(self, result: Optional[dict] = None, error: Optional[Exception] = None):
        self.result = result if result is not None else SAMPLE_ANALYSIS
        self.error = error
        self.delay = 0.0
        self.calls: List[dict] = []

    async def analyze_contract(self, text, contract_type=None):
        self.calls.append({"text": text, "contract_type": contract_type})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AnalysisResult.model_validate(self.result)

    async def answer_question(self, question, contract_text, analysis=None):
        self.calls.append({"question": question})
        if self.error is not None:
            raise self.error
        return ChatAnswer(answer=f"Answer to: {question}", referenced_clauses=["Section 1"])


@pytest.fixture
async def test_engine(tmp_path):
    """File-backed SQLite engine per test; NullPool so every session gets its own connection."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_async_engine(url, echo=False, poolclass=NullPool, **engine_options(url))
    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def TestAsyncSessionLocal(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(TestAsyncSessionLocal):
    """
    Fixture that provides an isolated database session for each test.

    Tables are created by the engine fixture before the test and dropped after it.
    """
    async with TestAsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_analyzer():
    return FakeAnalyzer()


@pytest.fixture
def blob_store(tmp_path):
    return BlobStore(tmp_path / "media")


@pytest.fixture
async def client(TestAsyncSessionLocal, fake_redis, fake_analyzer, blob_store):
    """httpx AsyncClient against the app with database, storage, model and Redis swapped out."""
    from main import app

    # Override get_db dependency to use test database
    async def override_get_db():
        async with TestAsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_analyzer] = lambda: fake_analyzer
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    original_limiter = app.state.rate_limiter
    original_redis = app.state.redis
    app.state.rate_limiter = FixedWindowRateLimiter(fake_redis)
    app.state.redis = fake_redis

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.rate_limiter = original_limiter
    app.state.redis = original_redis


def auth_headers(user_id: str = "user-1", email: str = "user1@example.com") -> dict:
    return {"Authorization": f"Bearer {create_jwt(user_id, email=email, expires_in=timedelta(hours=1))}"}
