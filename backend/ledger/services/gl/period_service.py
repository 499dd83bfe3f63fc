"""Fiscal period management service.

Manages year / quarter / month periods with status transitions:
  OPEN ⇄ CLOSED → LOCKED

LOCKED is terminal.  Periods of the same type may not overlap within a
tenant/company; a YEAR period may contain MONTH or QUARTER periods, and a
date is owned by its most granular containing period.

Includes year-end closing entry generation (close Revenue/Expense accounts
into Retained Earnings).
"""

import calendar
import logging
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import case, select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.config import settings
from ledger.errors import (
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationFailedError,
)
from ledger.models.gl import (
    Account,
    AccountCategory,
    AccountSubCategory,
    FiscalPeriod,
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    JournalLine,
    PeriodStatus,
    PeriodType,
    POSTED_STATUSES,
)
from ledger.services.gl.coa_service import find_account_by_role

logger = logging.getLogger(__name__)


class PeriodError(LedgerError):
    """Fiscal period error."""


class PeriodNotFoundError(PeriodError, NotFoundError):
    pass


class PeriodOverlapError(PeriodError, ValidationFailedError):
    pass


class PeriodStateError(PeriodError, StateConflictError):
    pass


_GRANULARITY = case(
    (FiscalPeriod.period_type == PeriodType.MONTH, 0),
    (FiscalPeriod.period_type == PeriodType.QUARTER, 1),
    else_=2,
)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def list_periods(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    fiscal_year: int | None = None,
    period_type: PeriodType | None = None,
    status: PeriodStatus | None = None,
) -> list[FiscalPeriod]:
    q = (
        select(FiscalPeriod)
        .where(FiscalPeriod.tenant_id == tenant_id, FiscalPeriod.company_id == company_id)
        .order_by(FiscalPeriod.start_date, _GRANULARITY.desc())
    )
    if fiscal_year:
        q = q.where(FiscalPeriod.fiscal_year == fiscal_year)
    if period_type:
        q = q.where(FiscalPeriod.period_type == period_type)
    if status:
        q = q.where(FiscalPeriod.status == status)
    result = await db.execute(q)
    return list(result.scalars().all())


async def get_period(
    db: AsyncSession, period_id: int, *, tenant_id: int
) -> FiscalPeriod | None:
    result = await db.execute(
        select(FiscalPeriod).where(
            FiscalPeriod.id == period_id, FiscalPeriod.tenant_id == tenant_id
        )
    )
    return result.scalar_one_or_none()


async def find_periods_containing(
    db: AsyncSession, on: date, *, tenant_id: int, company_id: int
) -> list[FiscalPeriod]:
    """Every period whose window contains *on*, most granular first."""
    result = await db.execute(
        select(FiscalPeriod)
        .where(
            FiscalPeriod.tenant_id == tenant_id,
            FiscalPeriod.company_id == company_id,
            FiscalPeriod.start_date <= on,
            FiscalPeriod.end_date >= on,
        )
        .order_by(_GRANULARITY, FiscalPeriod.start_date.desc())
    )
    return list(result.scalars().all())


async def find_period_for_date(
    db: AsyncSession, on: date, *, tenant_id: int, company_id: int
) -> FiscalPeriod | None:
    """The period that owns *on* (MONTH before QUARTER before YEAR)."""
    periods = await find_periods_containing(
        db, on, tenant_id=tenant_id, company_id=company_id
    )
    return periods[0] if periods else None


async def _require_period(db: AsyncSession, period_id: int, tenant_id: int) -> FiscalPeriod:
    period = await get_period(db, period_id, tenant_id=tenant_id)
    if period is None:
        raise PeriodNotFoundError("Fiscal period not found")
    return period


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_fiscal_period(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    name: str,
    period_type: PeriodType,
    start_date: date,
    end_date: date,
    fiscal_year: int | None = None,
) -> FiscalPeriod:
    """Create an OPEN period.

    Rejects any intersection with an existing period of the same type:
    ``existing.start <= new.end AND existing.end >= new.start``.  Periods of
    different types nest freely, so a YEAR holds its QUARTERs and MONTHs;
    checking across types would reject the layout built by
    ``create_default_fiscal_periods``.
    """
    if end_date < start_date:
        raise ValidationFailedError("Fiscal period end date must not precede its start date")

    result = await db.execute(
        select(sa_func.count(FiscalPeriod.id)).where(
            FiscalPeriod.tenant_id == tenant_id,
            FiscalPeriod.company_id == company_id,
            FiscalPeriod.period_type == period_type,
            FiscalPeriod.start_date <= end_date,
            FiscalPeriod.end_date >= start_date,
        )
    )
    if (result.scalar() or 0) > 0:
        raise PeriodOverlapError("Fiscal period overlaps with existing period")

    period = FiscalPeriod(
        tenant_id=tenant_id,
        company_id=company_id,
        name=name,
        period_type=period_type,
        fiscal_year=fiscal_year or start_date.year,
        start_date=start_date,
        end_date=end_date,
        status=PeriodStatus.OPEN,
    )
    db.add(period)
    await db.flush()
    await db.refresh(period)
    logger.info("Created fiscal period %s (%s to %s)", period.name, start_date, end_date)
    return period


def _add_months(year: int, month: int, offset: int) -> tuple[int, int]:
    idx = (month - 1) + offset
    return year + idx // 12, idx % 12 + 1


async def create_default_fiscal_periods(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    year: int,
    start_month: int | None = None,
) -> list[FiscalPeriod]:
    """Create one YEAR period plus its 12 MONTH periods.

    The fiscal year starts on the first day of *start_month* of *year*
    (defaults to ``settings.fiscal_year_start_month``).
    """
    start_month = start_month or settings.fiscal_year_start_month
    end_year, end_month = _add_months(year, start_month, 11)
    _, last_day = calendar.monthrange(end_year, end_month)

    periods = [
        await create_fiscal_period(
            db,
            tenant_id=tenant_id,
            company_id=company_id,
            name=f"FY {year}",
            period_type=PeriodType.YEAR,
            start_date=date(year, start_month, 1),
            end_date=date(end_year, end_month, last_day),
            fiscal_year=year,
        )
    ]
    for offset in range(12):
        y, m = _add_months(year, start_month, offset)
        _, last_day = calendar.monthrange(y, m)
        periods.append(
            await create_fiscal_period(
                db,
                tenant_id=tenant_id,
                company_id=company_id,
                name=f"{calendar.month_abbr[m]} {y}",
                period_type=PeriodType.MONTH,
                start_date=date(y, m, 1),
                end_date=date(y, m, last_day),
                fiscal_year=year,
            )
        )

    logger.info("Created %d fiscal periods for FY %d", len(periods), year)
    return periods


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

async def count_draft_entries(db: AsyncSession, period: FiscalPeriod) -> int:
    result = await db.execute(
        select(sa_func.count(JournalEntry.id)).where(
            JournalEntry.tenant_id == period.tenant_id,
            JournalEntry.company_id == period.company_id,
            JournalEntry.status == JournalEntryStatus.DRAFT,
            JournalEntry.entry_date >= period.start_date,
            JournalEntry.entry_date <= period.end_date,
        )
    )
    return result.scalar() or 0


async def close_period(
    db: AsyncSession, period_id: int, *, tenant_id: int, user_id: int | None = None
) -> FiscalPeriod:
    """OPEN → CLOSED.  Refused while any DRAFT entry is dated inside the window."""
    period = await _require_period(db, period_id, tenant_id)
    if period.status in (PeriodStatus.CLOSED, PeriodStatus.LOCKED):
        raise PeriodStateError("Fiscal period is already closed")

    drafts = await count_draft_entries(db, period)
    if drafts > 0:
        raise PeriodStateError(f"Cannot close period with {drafts} draft entries")

    period.status = PeriodStatus.CLOSED
    period.closed_by = user_id
    period.closed_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Closed fiscal period %s", period.name)
    return period


async def reopen_period(
    db: AsyncSession, period_id: int, *, tenant_id: int, user_id: int | None = None
) -> FiscalPeriod:
    """CLOSED → OPEN."""
    period = await _require_period(db, period_id, tenant_id)
    if period.status == PeriodStatus.LOCKED:
        raise PeriodStateError("Cannot reopen locked period")
    if period.status == PeriodStatus.OPEN:
        raise PeriodStateError("Fiscal period is already open")
    period.status = PeriodStatus.OPEN
    period.closed_by = None
    period.closed_at = None
    await db.flush()
    logger.info("Reopened fiscal period %s", period.name)
    return period


async def lock_period(
    db: AsyncSession, period_id: int, *, tenant_id: int, user_id: int | None = None
) -> FiscalPeriod:
    """CLOSED → LOCKED.  Irreversible."""
    period = await _require_period(db, period_id, tenant_id)
    if period.status != PeriodStatus.CLOSED:
        raise PeriodStateError(
            f"Cannot lock: period is {period.status.value}, expected closed"
        )
    period.status = PeriodStatus.LOCKED
    await db.flush()
    logger.info("Locked fiscal period %s", period.name)
    return period


# ---------------------------------------------------------------------------
# Year-end closing
# ---------------------------------------------------------------------------

async def generate_year_end_closing(
    db: AsyncSession,
    period_id: int,
    *,
    tenant_id: int,
    user_id: int | None = None,
) -> "JournalEntry | None":
    """Generate the closing entry for *period_id*.

    Zeroes the posted activity of every revenue and expense account inside
    the period window into the retained-earnings account.  Returns the
    posted entry, or None when there is nothing to close.
    """
    from ledger.services.gl.journal_engine import create_journal_entry

    period = await _require_period(db, period_id, tenant_id)
    retained_earnings = await find_account_by_role(
        db,
        AccountSubCategory.RETAINED_EARNINGS,
        tenant_id=tenant_id,
        company_id=period.company_id,
    )
    if retained_earnings is None:
        raise ReferentialIntegrityError("Retained Earnings account not found")

    result = await db.execute(
        select(
            Account,
            sa_func.coalesce(sa_func.sum(JournalLine.debit), 0).label("dr"),
            sa_func.coalesce(sa_func.sum(JournalLine.credit), 0).label("cr"),
        )
        .join(JournalLine, JournalLine.account_id == Account.id)
        .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
        .where(
            Account.tenant_id == tenant_id,
            Account.company_id == period.company_id,
            Account.account_category.in_([AccountCategory.REVENUE, AccountCategory.EXPENSE]),
            JournalEntry.status.in_(POSTED_STATUSES),
            JournalEntry.entry_date >= period.start_date,
            JournalEntry.entry_date <= period.end_date,
        )
        .group_by(Account.id)
        .order_by(Account.account_code)
    )

    lines = []
    for acct, dr, cr in result.all():
        net = Decimal(str(dr)) - Decimal(str(cr))
        if net == 0:
            continue
        # Close by posting the opposite side of the balance
        lines.append({
            "account_id": acct.id,
            "debit": -net if net < 0 else Decimal("0"),
            "credit": net if net > 0 else Decimal("0"),
            "description": f"Year-end close: {acct.name}",
        })

    if not lines:
        return None

    total_dr = sum(ln["debit"] for ln in lines)
    total_cr = sum(ln["credit"] for ln in lines)
    net_income = total_dr - total_cr  # debits raised against revenue = income

    if net_income > 0:
        lines.append({
            "account_id": retained_earnings.id,
            "debit": Decimal("0"),
            "credit": net_income,
            "description": f"Net income for {period.name} to Retained Earnings",
        })
    elif net_income < 0:
        lines.append({
            "account_id": retained_earnings.id,
            "debit": -net_income,
            "credit": Decimal("0"),
            "description": f"Net loss for {period.name} to Retained Earnings",
        })

    entry = await create_journal_entry(
        db,
        tenant_id=tenant_id,
        company_id=period.company_id,
        entry_date=period.end_date,
        entry_type=JournalEntryType.CLOSING,
        reference=f"YE-CLOSE-{period.fiscal_year}",
        description=f"Year-end closing entry for {period.name}",
        lines=lines,
        created_by=user_id,
        auto_post=True,
    )
    logger.info(
        "Generated closing entry %s for %s (net income: %s)",
        entry.entry_number, period.name, net_income,
    )
    return entry
