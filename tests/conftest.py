"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy import select
from batch.job import JobController
from batch.tracker import ExecutionTracker
from core.config import StepSettings
from core.database import build_engine, build_session_factory, create_schema
from models.customer import Customer


@pytest.fixture
def database_url(tmp_path):
    """File-backed SQLite database, one per test"""
    return f"sqlite+aiosqlite:///{tmp_path / 'batch_test.db'}"


@pytest_asyncio.fixture(scope="function")
async def test_engine(database_url):
    """Create test database engine with all tables"""
    engine = build_engine(database_url)
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
def tracker(session_factory):
    return ExecutionTracker(session_factory)


@pytest.fixture
def controller(tracker):
    return JobController(tracker)


@pytest.fixture
def step_config():
    """Build a StepSettings with test-friendly defaults"""
    def _build(**overrides):
        values = {
            "chunk_size": 10,
            "retry_limit": 0,
            "skip_limit": 0,
            "retry_backoff_seconds": 0,
            "write_timeout_seconds": None,
        }
        values.update(overrides)
        return StepSettings(**values)
    return _build


@pytest.fixture
def write_csv(tmp_path):
    """Write a customer file (header included) and return its path"""
    def _write(rows, name="customers.csv", header="customer_id,name,age,email"):
        path = tmp_path / name
        lines = ([header] if header else []) + list(rows)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)
    return _write


@pytest.fixture
def fetch_customers(session_factory):
    """Return persisted customers ordered by customer_id"""
    async def _fetch():
        async with session_factory() as session:
            result = await session.execute(select(Customer).order_by(Customer.customer_id))
            return result.scalars().all()
    return _fetch
