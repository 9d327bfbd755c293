import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.credit_account import CreditAccount
from models.user import User
from routers import rate_limit


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
    """Fresh SQLite database per test."""
    db_path = tmp_path / "clearmarket.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


async def seed_user(session_maker, user_id: str, *, balance=None, role: str = "vendor") -> None:
    """Create a user and, unless ``balance`` is None, their credit account."""
    async with session_maker() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", role=role))
        if balance is not None:
            session.add(CreditAccount(user_id=user_id, current_balance=balance, earned_credits=0, paid_credits=balance))
        await session.commit()
