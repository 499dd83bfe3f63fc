"""Account balances and general-ledger listings.

Balances are signed ``debit - credit`` sums over posted lines, so
debit-normal accounts come out positive and credit-normal accounts negative.
All date bounds are inclusive.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.errors import NotFoundError
from ledger.models.gl import (
    Account,
    JournalEntry,
    JournalEntryStatus,
    JournalLine,
    POSTED_STATUSES,
)

logger = logging.getLogger(__name__)


def _dec(val) -> Decimal:
    return Decimal(str(val)) if val is not None else Decimal("0")


def _line_totals_query(*, tenant_id: int, company_id: int, as_of: date | None):
    q = (
        select(
            JournalLine.account_id,
            sa_func.coalesce(sa_func.sum(JournalLine.debit), 0).label("dr"),
            sa_func.coalesce(sa_func.sum(JournalLine.credit), 0).label("cr"),
        )
        .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
        .where(
            JournalEntry.tenant_id == tenant_id,
            JournalEntry.company_id == company_id,
            JournalEntry.status.in_(POSTED_STATUSES),
        )
        .group_by(JournalLine.account_id)
    )
    if as_of:
        q = q.where(JournalEntry.entry_date <= as_of)
    return q


async def get_account_balance(
    db: AsyncSession,
    account_id: int,
    *,
    tenant_id: int,
    company_id: int,
    as_of: date | None = None,
) -> Decimal:
    """Signed balance of one account, optionally as of a date.

    REVERSED entries count alongside POSTED ones; each is cancelled by its
    posted mirror, so a reversal nets to zero rather than vanishing.
    """
    q = _line_totals_query(tenant_id=tenant_id, company_id=company_id, as_of=as_of).where(
        JournalLine.account_id == account_id
    )
    row = (await db.execute(q)).first()
    if row is None:
        return Decimal("0")
    return _dec(row.dr) - _dec(row.cr)


async def get_account_balances(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    as_of: date | None = None,
) -> list[dict]:
    """Per-account debit / credit / balance for active accounts with activity."""
    totals = {
        row.account_id: (_dec(row.dr), _dec(row.cr))
        for row in (
            await db.execute(
                _line_totals_query(tenant_id=tenant_id, company_id=company_id, as_of=as_of)
            )
        ).all()
    }
    accounts = await db.execute(
        select(Account)
        .where(
            Account.tenant_id == tenant_id,
            Account.company_id == company_id,
            Account.is_active.is_(True),
        )
        .order_by(Account.account_code)
    )

    rows = []
    for acct in accounts.scalars().all():
        dr, cr = totals.get(acct.id, (Decimal("0"), Decimal("0")))
        if dr == 0 and cr == 0:
            continue
        rows.append({
            "account": acct,
            "account_id": acct.id,
            "account_code": acct.account_code,
            "account_name": acct.name,
            "account_category": acct.account_category,
            "debit": dr,
            "credit": cr,
            "balance": dr - cr,
        })
    return rows


async def get_general_ledger(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    account_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    fiscal_period_id: int | None = None,
    status: JournalEntryStatus | None = None,
) -> list[dict]:
    """Ordered ledger lines with a running balance.

    Without *status* every posted line is listed (reversed entries included).
    The running balance is seeded from the balance on the day before
    *start_date* when both *account_id* and *start_date* are given.
    """
    q = (
        select(JournalLine, JournalEntry, Account)
        .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
        .join(Account, JournalLine.account_id == Account.id)
        .where(JournalEntry.tenant_id == tenant_id, JournalEntry.company_id == company_id)
        .order_by(JournalEntry.entry_date, JournalEntry.entry_number, JournalLine.line_number)
    )
    if status:
        q = q.where(JournalEntry.status == status)
    else:
        q = q.where(JournalEntry.status.in_(POSTED_STATUSES))
    if account_id:
        q = q.where(JournalLine.account_id == account_id)
    if start_date:
        q = q.where(JournalEntry.entry_date >= start_date)
    if end_date:
        q = q.where(JournalEntry.entry_date <= end_date)
    if fiscal_period_id:
        q = q.where(JournalEntry.fiscal_period_id == fiscal_period_id)

    running = Decimal("0")
    if account_id and start_date:
        running = await get_account_balance(
            db,
            account_id,
            tenant_id=tenant_id,
            company_id=company_id,
            as_of=start_date - timedelta(days=1),
        )

    rows = []
    for line, entry, account in (await db.execute(q)).all():
        running += line.debit - line.credit
        rows.append({
            "entry_id": entry.id,
            "entry_date": entry.entry_date,
            "entry_number": entry.entry_number,
            "entry_type": entry.entry_type,
            "reference": entry.reference,
            "description": line.description or entry.description,
            "account_code": account.account_code,
            "account_name": account.name,
            "debit": line.debit,
            "credit": line.credit,
            "balance": running,
        })
    return rows


async def get_account_activity(
    db: AsyncSession,
    account_id: int,
    *,
    tenant_id: int,
    company_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    """Opening balance, posted transactions in range and closing balance."""
    result = await db.execute(
        select(Account).where(
            Account.id == account_id,
            Account.tenant_id == tenant_id,
            Account.company_id == company_id,
        )
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError("Account not found")

    opening = Decimal("0")
    if start_date:
        opening = await get_account_balance(
            db,
            account_id,
            tenant_id=tenant_id,
            company_id=company_id,
            as_of=start_date - timedelta(days=1),
        )
    transactions = await get_general_ledger(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
    )
    closing = await get_account_balance(
        db, account_id, tenant_id=tenant_id, company_id=company_id, as_of=end_date
    )
    return {
        "account": account,
        "opening_balance": opening,
        "closing_balance": closing,
        "transactions": transactions,
    }
