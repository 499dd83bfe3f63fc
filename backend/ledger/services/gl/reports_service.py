"""GL standard reports service.

Provides the standard financial reports, each returning structured data
(dicts of Decimals) suitable for rendering or exporting by the caller.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ledger.models.gl import (
    BALANCE_TOLERANCE,
    Account,
    AccountCategory,
    BalanceBucket,
    JournalEntry,
    JournalEntryStatus,
    JournalLine,
    POSTED_STATUSES,
)
from ledger.services.gl.balance_service import get_account_balances

logger = logging.getLogger(__name__)


def _sum(rows: list[dict], key: str = "balance") -> Decimal:
    return sum((r[key] for r in rows), Decimal("0"))


def _row(acct: Account, debit: Decimal, credit: Decimal, balance: Decimal) -> dict:
    return {
        "account_id": acct.id,
        "account_code": acct.account_code,
        "account_name": acct.name,
        "account_category": acct.account_category,
        "debit": debit,
        "credit": credit,
        "balance": balance,
    }


# ---------------------------------------------------------------------------
# 1. Trial Balance
# ---------------------------------------------------------------------------

async def trial_balance_report(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    as_of_date: date | None = None,
) -> dict:
    """Each account's signed balance split into a debit or credit column."""
    balances = await get_account_balances(
        db, tenant_id=tenant_id, company_id=company_id, as_of=as_of_date
    )
    entries = []
    for b in balances:
        balance = b["balance"]
        entries.append({
            "account_code": b["account_code"],
            "account_name": b["account_name"],
            "account_category": b["account_category"],
            "debit": balance if balance >= 0 else Decimal("0"),
            "credit": -balance if balance < 0 else Decimal("0"),
        })

    total_debits = _sum(entries, "debit")
    total_credits = _sum(entries, "credit")
    return {
        "as_of_date": as_of_date or date.today(),
        "entries": entries,
        "total_debits": total_debits,
        "total_credits": total_credits,
        "is_balanced": abs(total_debits - total_credits) < BALANCE_TOLERANCE,
    }


# ---------------------------------------------------------------------------
# 2. Income Statement
# ---------------------------------------------------------------------------

async def income_statement_report(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    """Revenue and expense activity in range; both totals as positive magnitudes."""
    q = (
        select(
            Account,
            sa_func.coalesce(sa_func.sum(JournalLine.debit), 0).label("dr"),
            sa_func.coalesce(sa_func.sum(JournalLine.credit), 0).label("cr"),
        )
        .join(JournalLine, JournalLine.account_id == Account.id)
        .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
        .where(
            JournalEntry.tenant_id == tenant_id,
            JournalEntry.company_id == company_id,
            JournalEntry.status.in_(POSTED_STATUSES),
            Account.account_category.in_([AccountCategory.REVENUE, AccountCategory.EXPENSE]),
        )
        .group_by(Account.id)
        .order_by(Account.account_code)
    )
    if start_date:
        q = q.where(JournalEntry.entry_date >= start_date)
    if end_date:
        q = q.where(JournalEntry.entry_date <= end_date)

    revenue, expenses = [], []
    for acct, dr, cr in (await db.execute(q)).all():
        dr, cr = Decimal(str(dr)), Decimal(str(cr))
        row = _row(acct, dr, cr, abs(dr - cr))
        if acct.account_category == AccountCategory.REVENUE:
            revenue.append(row)
        else:
            expenses.append(row)

    total_revenue = _sum(revenue)
    total_expenses = _sum(expenses)
    return {
        "start_date": start_date,
        "end_date": end_date or date.today(),
        "revenue": {"accounts": revenue, "total": total_revenue},
        "expenses": {"accounts": expenses, "total": total_expenses},
        "net_income": total_revenue - total_expenses,
    }


# ---------------------------------------------------------------------------
# 3. Balance Sheet
# ---------------------------------------------------------------------------

async def balance_sheet_report(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    as_of_date: date | None = None,
) -> dict:
    """Assets, liabilities and equity as of a date.

    Current vs non-current comes from ``Account.balance_bucket``; accounts
    without a bucket are reported as non-current.  Retained earnings are the
    net income from an income statement run up to *as_of_date*.  The
    ``is_balanced`` flag is informational only.
    """
    balances = await get_account_balances(
        db, tenant_id=tenant_id, company_id=company_id, as_of=as_of_date
    )

    def _section(category: AccountCategory, sign: int) -> dict:
        current, non_current = [], []
        for b in balances:
            if b["account_category"] != category:
                continue
            row = _row(b["account"], b["debit"], b["credit"], b["balance"] * sign)
            if b["account"].balance_bucket == BalanceBucket.CURRENT:
                current.append(row)
            else:
                non_current.append(row)
        return {
            "current": current,
            "non_current": non_current,
            "total": _sum(current) + _sum(non_current),
        }

    assets = _section(AccountCategory.ASSET, 1)
    liabilities = _section(AccountCategory.LIABILITY, -1)

    equity_accounts = [
        _row(b["account"], b["debit"], b["credit"], -b["balance"])
        for b in balances
        if b["account_category"] == AccountCategory.EQUITY
    ]
    income = await income_statement_report(
        db, tenant_id=tenant_id, company_id=company_id, end_date=as_of_date
    )
    retained_earnings = income["net_income"]
    total_equity = _sum(equity_accounts) + retained_earnings
    total_le = liabilities["total"] + total_equity

    return {
        "as_of_date": as_of_date or date.today(),
        "assets": assets,
        "liabilities": liabilities,
        "equity": {
            "accounts": equity_accounts,
            "retained_earnings": retained_earnings,
            "total": total_equity,
        },
        "total_liabilities_and_equity": total_le,
        "is_balanced": abs(assets["total"] - total_le) < BALANCE_TOLERANCE,
    }


# ---------------------------------------------------------------------------
# 4. Journal Entry Register
# ---------------------------------------------------------------------------

async def journal_register(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    period_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    status: JournalEntryStatus | None = None,
) -> list[dict]:
    """All journal entries (header level) with totals."""
    q = (
        select(JournalEntry)
        .where(JournalEntry.tenant_id == tenant_id, JournalEntry.company_id == company_id)
        .options(selectinload(JournalEntry.lines))
        .order_by(JournalEntry.entry_date, JournalEntry.entry_number)
    )
    if period_id:
        q = q.where(JournalEntry.fiscal_period_id == period_id)
    if date_from:
        q = q.where(JournalEntry.entry_date >= date_from)
    if date_to:
        q = q.where(JournalEntry.entry_date <= date_to)
    if status:
        q = q.where(JournalEntry.status == status)

    result = await db.execute(q)
    rows = []
    for entry in result.scalars().all():
        rows.append({
            "entry_number": entry.entry_number,
            "date": entry.entry_date,
            "entry_type": entry.entry_type.value,
            "reference": entry.reference,
            "description": entry.description,
            "status": entry.status.value,
            "total_debit": entry.total_debits,
            "total_credit": entry.total_credits,
            "line_count": len(entry.lines),
            "created_by": entry.created_by,
        })
    return rows


REPORT_REGISTRY = {
    "trial_balance": trial_balance_report,
    "income_statement": income_statement_report,
    "balance_sheet": balance_sheet_report,
    "journal_register": journal_register,
}
