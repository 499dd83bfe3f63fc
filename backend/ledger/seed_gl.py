"""Seed data for a ledger company.

Creates (all idempotent):
- Default Chart of Accounts (headers plus posting accounts, with roles
  and balance-sheet buckets)
- Fiscal periods (FY plus 12 months) for the requested years

Run directly to seed one company:

    python -m ledger.seed_gl --tenant 1 --company 1 --year 2026
"""

import argparse
import asyncio
import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.config import configure_logging
from ledger.database import async_session, close_db, init_db
from ledger.models.gl import (
    Account,
    AccountCategory,
    AccountSubCategory,
    BalanceBucket,
    FiscalPeriod,
)
from ledger.services.gl.coa_service import create_account, get_account_by_code
from ledger.services.gl.period_service import create_default_fiscal_periods

logger = logging.getLogger(__name__)

A = AccountCategory.ASSET
L = AccountCategory.LIABILITY
E = AccountCategory.EQUITY
R = AccountCategory.REVENUE
X = AccountCategory.EXPENSE
S = AccountSubCategory
CUR = BalanceBucket.CURRENT
NON = BalanceBucket.NON_CURRENT

# (code, name, category, role, bucket, parent_code, is_system)
DEFAULT_CHART = [
    ("1000", "Assets",                   A, S.HEADER,                   None, None,   False),
    ("1100", "Current Assets",           A, S.HEADER,                   CUR,  "1000", False),
    ("1110", "Cash",                     A, S.CASH,                     CUR,  "1100", True),
    ("1120", "Bank Account",             A, S.BANK,                     CUR,  "1100", True),
    ("1130", "Accounts Receivable",      A, S.ACCOUNTS_RECEIVABLE,      CUR,  "1100", True),
    ("1140", "Inventory",                A, S.INVENTORY,                CUR,  "1100", False),
    ("1150", "VAT Receivable",           A, S.TAX_RECEIVABLE,           CUR,  "1100", True),
    ("1200", "Fixed Assets",             A, S.HEADER,                   NON,  "1000", False),
    ("1210", "Equipment",                A, S.FIXED_ASSET,              NON,  "1200", False),
    ("1220", "Accumulated Depreciation", A, S.ACCUMULATED_DEPRECIATION, NON,  "1200", False),

    ("2000", "Liabilities",              L, S.HEADER,                   None, None,   False),
    ("2100", "Current Liabilities",      L, S.HEADER,                   CUR,  "2000", False),
    ("2110", "Accounts Payable",         L, S.ACCOUNTS_PAYABLE,         CUR,  "2100", True),
    ("2120", "VAT Payable",              L, S.TAX_PAYABLE,              CUR,  "2100", True),
    ("2130", "Salaries Payable",         L, S.PAYROLL,                  CUR,  "2100", False),
    ("2200", "Long-term Liabilities",    L, S.HEADER,                   NON,  "2000", False),
    ("2210", "Loans Payable",            L, S.LOAN,                     NON,  "2200", False),

    ("3000", "Equity",                   E, S.HEADER,                   None, None,   False),
    ("3100", "Share Capital",            E, S.SHARE_CAPITAL,            None, "3000", False),
    ("3200", "Retained Earnings",        E, S.RETAINED_EARNINGS,        None, "3000", True),
    ("3300", "Current Year Earnings",    E, S.CURRENT_EARNINGS,         None, "3000", True),

    ("4000", "Revenue",                  R, S.HEADER,                   None, None,   False),
    ("4100", "Sales Revenue",            R, S.SALES,                    None, "4000", True),
    ("4200", "Service Revenue",          R, S.SERVICE,                  None, "4000", False),
    ("4300", "Other Income",             R, S.OTHER_INCOME,             None, "4000", False),

    ("5000", "Cost of Goods Sold",       X, S.HEADER,                   None, None,   False),
    ("5100", "Purchases",                X, S.COST_OF_SALES,            None, "5000", False),
    ("5200", "Direct Labor",             X, S.COST_OF_SALES,            None, "5000", False),

    ("6000", "Operating Expenses",       X, S.HEADER,                   None, None,   False),
    ("6100", "Salaries & Wages",         X, None,                       None, "6000", False),
    ("6200", "Rent Expense",             X, None,                       None, "6000", False),
    ("6300", "Utilities",                X, None,                       None, "6000", False),
    ("6400", "Office Supplies",          X, None,                       None, "6000", False),
    ("6500", "Depreciation Expense",     X, None,                       None, "6000", False),
    ("6600", "Marketing & Advertising",  X, None,                       None, "6000", False),
    ("6700", "Professional Fees",        X, None,                       None, "6000", False),
    ("6800", "Insurance",                X, None,                       None, "6000", False),
    ("6900", "Miscellaneous Expenses",   X, S.OPERATING_EXPENSES,       None, "6000", False),
]


# ---------------------------------------------------------------------------
# Chart of Accounts
# ---------------------------------------------------------------------------

async def seed_default_chart_of_accounts(
    db: AsyncSession, *, tenant_id: int, company_id: int
) -> list[Account]:
    """Create any missing default accounts; existing codes are left untouched."""
    by_code: dict[str, Account] = {}
    created = 0
    for code, name, category, role, bucket, parent_code, is_system in DEFAULT_CHART:
        account = await get_account_by_code(
            db, code, tenant_id=tenant_id, company_id=company_id
        )
        if account is not None:
            logger.debug("Account %s already present, skipping", code)
        else:
            parent = by_code.get(parent_code) if parent_code else None
            account = await create_account(
                db,
                tenant_id=tenant_id,
                company_id=company_id,
                account_code=code,
                name=name,
                account_category=category,
                sub_category=role,
                balance_bucket=bucket,
                parent_id=parent.id if parent else None,
                is_system_account=is_system,
            )
            created += 1
        by_code[code] = account

    logger.info(
        "Default chart of accounts applied for tenant %d company %d (%d created)",
        tenant_id, company_id, created,
    )
    return list(by_code.values())


# ---------------------------------------------------------------------------
# Fiscal periods
# ---------------------------------------------------------------------------

async def seed_fiscal_periods(
    db: AsyncSession, *, tenant_id: int, company_id: int, years: list[int]
) -> list[FiscalPeriod]:
    """Create FY + monthly periods for each year that has none yet."""
    created: list[FiscalPeriod] = []
    for year in years:
        existing = await db.execute(
            select(FiscalPeriod.id)
            .where(
                FiscalPeriod.tenant_id == tenant_id,
                FiscalPeriod.company_id == company_id,
                FiscalPeriod.fiscal_year == year,
            )
            .limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            logger.debug("Fiscal year %d already has periods, skipping", year)
            continue
        created.extend(
            await create_default_fiscal_periods(
                db, tenant_id=tenant_id, company_id=company_id, year=year
            )
        )
    return created


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

async def seed_ledger(
    db: AsyncSession, *, tenant_id: int, company_id: int, years: list[int]
) -> None:
    """Seed chart of accounts and periods for one company, then commit."""
    await seed_default_chart_of_accounts(db, tenant_id=tenant_id, company_id=company_id)
    await seed_fiscal_periods(db, tenant_id=tenant_id, company_id=company_id, years=years)
    await db.commit()
    logger.info("Ledger seed data applied (COA, periods %s)", years)


async def _run(tenant_id: int, company_id: int, years: list[int], create_tables: bool) -> None:
    if create_tables:
        await init_db()
    async with async_session() as db:
        await seed_ledger(db, tenant_id=tenant_id, company_id=company_id, years=years)
    await close_db()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Seed a ledger company")
    parser.add_argument("--tenant", type=int, required=True)
    parser.add_argument("--company", type=int, required=True)
    parser.add_argument(
        "--year", type=int, action="append", dest="years",
        help="Fiscal year to create periods for (repeatable; default: current year)",
    )
    parser.add_argument(
        "--create-tables", action="store_true",
        help="Run create_all first (development databases only)",
    )
    args = parser.parse_args(argv)

    configure_logging()
    asyncio.run(_run(args.tenant, args.company, args.years or [date.today().year], args.create_tables))


if __name__ == "__main__":
    main()
