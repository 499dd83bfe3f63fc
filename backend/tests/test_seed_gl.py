"""Default chart of accounts and period seeding."""

from sqlalchemy import func, select

from conftest import COMPANY, TENANT

from ledger.models.gl import (
    Account,
    AccountSubCategory,
    AccountType,
    BalanceBucket,
    FiscalPeriod,
)
from ledger.seed_gl import (
    DEFAULT_CHART,
    seed_default_chart_of_accounts,
    seed_fiscal_periods,
    seed_ledger,
)


async def _count(db, model):
    return (await db.execute(select(func.count(model.id)))).scalar()


def test_chart_codes_unique_and_parents_declared_first():
    seen = set()
    for code, _name, _category, _role, _bucket, parent_code, _system in DEFAULT_CHART:
        assert code not in seen
        assert parent_code is None or parent_code in seen
        seen.add(code)


def test_every_posting_role_used_once():
    roles = [row[3] for row in DEFAULT_CHART if row[3] not in (None, AccountSubCategory.HEADER)]
    singletons = [
        AccountSubCategory.CASH, AccountSubCategory.ACCOUNTS_RECEIVABLE,
        AccountSubCategory.ACCOUNTS_PAYABLE, AccountSubCategory.TAX_PAYABLE,
        AccountSubCategory.TAX_RECEIVABLE, AccountSubCategory.RETAINED_EARNINGS,
        AccountSubCategory.SALES, AccountSubCategory.OPERATING_EXPENSES,
    ]
    for role in singletons:
        assert roles.count(role) == 1, role


async def test_chart_is_idempotent(db):
    first = await seed_default_chart_of_accounts(db, tenant_id=TENANT, company_id=COMPANY)
    again = await seed_default_chart_of_accounts(db, tenant_id=TENANT, company_id=COMPANY)
    assert len(first) == len(DEFAULT_CHART)
    assert [a.id for a in first] == [a.id for a in again]
    assert await _count(db, Account) == len(DEFAULT_CHART)


async def test_chart_attributes(db, coa):
    assert coa["1130"].balance_bucket == BalanceBucket.CURRENT
    assert coa["2210"].balance_bucket == BalanceBucket.NON_CURRENT
    assert coa["4100"].balance_bucket is None
    assert coa["2110"].account_type == AccountType.CREDIT
    assert coa["1110"].is_system_account
    assert not coa["6200"].is_system_account
    assert coa["1110"].parent_id == coa["1100"].id
    assert coa["1110"].level == 3


async def test_periods_skip_existing_years(db, periods):
    created = await seed_fiscal_periods(
        db, tenant_id=TENANT, company_id=COMPANY, years=[2026, 2027]
    )
    assert {p.fiscal_year for p in created} == {2027}
    assert len(created) == 13
    assert await _count(db, FiscalPeriod) == 26


async def test_seed_ledger_commits(db):
    await seed_ledger(db, tenant_id=TENANT, company_id=COMPANY + 1, years=[2026])
    accounts = await db.execute(
        select(func.count(Account.id)).where(Account.company_id == COMPANY + 1)
    )
    assert accounts.scalar() == len(DEFAULT_CHART)
