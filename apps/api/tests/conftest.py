import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import Base, build_engine, get_db
from main import app
from models.credit_account import CreditAccount
from routers import rate_limit
from services.credit_accounts import ensure_account, load_balance


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "credit_ledger.db"
    engine = build_engine(f"sqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


def new_request_id() -> str:
    return str(uuid.uuid4())


async def seed_account(session: AsyncSession, user_id: str, **values):
    """Create the account and force counters or tier to a known state.

    Commits, so the SQLite write lock is free for other sessions afterwards.
    """
    await ensure_account(user_id, session)
    if values:
        await session.execute(
            update(CreditAccount).where(CreditAccount.user_id == user_id).values(**values)
        )
    await session.commit()
    return await current_balance(session, user_id)


async def current_balance(session: AsyncSession, user_id: str):
    balance = await load_balance(user_id, session)
    await session.commit()
    return balance
