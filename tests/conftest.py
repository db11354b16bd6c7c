"""
Test fixtures for TrustGate.

Provides:
- A fresh SQLite database per test (file-backed so concurrent sessions work)
- A controllable clock shared by the engines under test
- Row factories for users, employees, transactions and sessions
"""

import os
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from trustgate.db import models  # noqa: E402,F401  register all models
from trustgate.db.engine import Base  # noqa: E402
from trustgate.db.models import (  # noqa: E402
    Employee,
    EmployeeSession,
    Transaction,
    User,
    UserSession,
)

# Monday 2026-03-02 14:00 UTC
NOW = datetime(2026, 3, 2, 14, 0, 0)


class FakeClock:
    """Callable clock the tests can move."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create a test database engine with all tables."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'trustgate.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    """Create a session factory bound to the test engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Factories ────────────────────────────────────────────────────────────


async def add_rows(session_factory, *rows) -> None:
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()


async def make_user(
    session_factory,
    created_at: datetime = NOW - timedelta(days=400),
    **fields,
) -> User:
    values = {
        "email": f"user-{uuid.uuid4().hex[:8]}@example.com",
        "kyc_status": "APPROVED",
        "user_level": "PLATA",
        "email_verified": True,
        "phone_verified": True,
        "balance": Decimal("0"),
    }
    values.update(fields)
    user = User(id=uuid.uuid4(), created_at=created_at, **values)
    await add_rows(session_factory, user)
    return user


async def make_employee(
    session_factory,
    role: str = "ANALYST",
    supervisor_id: Optional[uuid.UUID] = None,
    **fields,
) -> Employee:
    employee = Employee(
        id=uuid.uuid4(),
        email=f"emp-{uuid.uuid4().hex[:8]}@trustgate.local",
        name=fields.pop("name", "Test Employee"),
        role=role,
        supervisor_id=supervisor_id,
        created_at=NOW - timedelta(days=365),
        **fields,
    )
    await add_rows(session_factory, employee)
    return employee


async def make_transaction(
    session_factory,
    user_id: uuid.UUID,
    amount: float,
    created_at: datetime,
    type: str = "TRANSFER_OUT",
    status: str = "COMPLETED",
    **fields,
) -> Transaction:
    tx = Transaction(
        id=uuid.uuid4(),
        user_id=user_id,
        type=type,
        status=status,
        amount=Decimal(str(amount)),
        created_at=created_at,
        **fields,
    )
    await add_rows(session_factory, tx)
    return tx


async def make_session(
    session_factory,
    user_id: uuid.UUID,
    created_at: datetime,
    **fields,
) -> UserSession:
    row = UserSession(id=uuid.uuid4(), user_id=user_id, created_at=created_at, **fields)
    await add_rows(session_factory, row)
    return row


async def make_employee_session(
    session_factory,
    employee_id: uuid.UUID,
    created_at: datetime = NOW - timedelta(hours=1),
    ip_address: str = "10.0.0.5",
) -> EmployeeSession:
    row = EmployeeSession(
        id=uuid.uuid4(), employee_id=employee_id, ip_address=ip_address, created_at=created_at,
    )
    await add_rows(session_factory, row)
    return row
