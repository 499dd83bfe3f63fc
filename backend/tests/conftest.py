"""Shared fixtures: an in-memory SQLite ledger per test.

The services run unchanged against ``sqlite+aiosqlite``.  pysqlite's own
transaction handling is switched off so SAVEPOINTs (``begin_nested``) work.
"""

from datetime import date
from decimal import Decimal

import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import ledger.models  # noqa: F401
from ledger.database import Base
from ledger.seed_gl import seed_default_chart_of_accounts
from ledger.services.gl.period_service import create_default_fiscal_periods

TENANT = 1
COMPANY = 1
YEAR = 2026


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(eng.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db(engine):
    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def coa(db):
    """Default chart of accounts keyed by account code."""
    accounts = await seed_default_chart_of_accounts(
        db, tenant_id=TENANT, company_id=COMPANY
    )
    return {a.account_code: a for a in accounts}


@pytest_asyncio.fixture
async def periods(db):
    """FY 2026 plus its twelve monthly periods."""
    return await create_default_fiscal_periods(
        db, tenant_id=TENANT, company_id=COMPANY, year=YEAR
    )


@pytest_asyncio.fixture
async def ledger(db, coa, periods):
    """Seeded chart of accounts with open 2026 periods."""
    return coa


def dr(account, amount, **extra) -> dict:
    return {"account_id": account.id, "debit": Decimal(str(amount)), "credit": Decimal("0"), **extra}


def cr(account, amount, **extra) -> dict:
    return {"account_id": account.id, "debit": Decimal("0"), "credit": Decimal(str(amount)), **extra}


def d(month: int, day: int = 15) -> date:
    return date(YEAR, month, day)
