import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from crm_segments.main import app, configure_segmentation
from crm_segments.database import Base
from crm_segments.models import CustomerLifecycle
from crm_segments.schemas.segment import SegmentCriteriaInput, SegmentRuleInput
from crm_segments.services.segmentation.validator import compile_criteria


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Create a throwaway SQLite database with all tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def seed_customers(session_factory):
    """Insert customer lifecycle rows: ``await seed_customers(dict, ...)``."""

    async def _seed(*rows: dict):
        async with session_factory() as session:
            for row in rows:
                session.add(CustomerLifecycle(**row))
            await session.commit()

    return _seed


@pytest_asyncio.fixture
async def client(session_factory):
    """Test client wired to the test database; the lifespan is not run."""
    updater = configure_segmentation(app, session_factory)
    updater.debounce_seconds = 0

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await updater.close()


@pytest.fixture
def make_criteria():
    """Build compiled criteria from ``(field, operator, value, data_type)`` tuples."""

    def _make(*rules, logic="AND"):
        return compile_criteria(
            SegmentCriteriaInput(
                rules=[
                    SegmentRuleInput(field=f, operator=op, value=v, data_type=t)
                    for f, op, v, t in rules
                ],
                logic=logic,
            )
        )

    return _make
