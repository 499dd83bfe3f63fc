"""Core double-entry journal engine.

All monetary amounts flow through this engine.  The fundamental invariant is:
**total debits == total credits** (within 0.01) for every journal entry,
enforced at two layers:

1. Database CHECK constraint on line amounts (non-negative, exactly one side)
2. Application-level validation before persist

Journal entries are immutable once posted.  Corrections are made exclusively
via reversing entries.  Every create / post / reverse is gated on the fiscal
period owning the entry date.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ledger.errors import (
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationFailedError,
)
from ledger.models.gl import (
    BALANCE_TOLERANCE,
    Account,
    FiscalPeriod,
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    JournalLine,
    PeriodStatus,
)
from ledger.services import sequence
from ledger.services.gl.period_service import find_periods_containing

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


class JournalEngineError(LedgerError):
    """Base exception for journal engine errors."""


class BalanceError(JournalEngineError, ValidationFailedError):
    """Malformed lines or debits do not equal credits."""


class StatusTransitionError(JournalEngineError, StateConflictError):
    """Invalid status transition attempted."""


class PeriodClosedError(JournalEngineError, StateConflictError):
    """Attempted to post to a closed or locked period."""


class PeriodNotFoundError(JournalEngineError, NotFoundError):
    """No fiscal period contains the entry date."""


class AccountInactiveError(JournalEngineError, ReferentialIntegrityError):
    """Line references an inactive account or one outside the tenant/company."""


class EntryNotFoundError(JournalEngineError, NotFoundError):
    pass


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _amount(value: Any) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def _plain(value: Decimal) -> str:
    """Render an amount without trailing zeros: 100, 90.5."""
    return format(value.normalize(), "f")


def validate_lines(lines: list[dict[str, Any]]) -> tuple[Decimal, Decimal]:
    """Check line shape and balance.  Returns ``(total_debits, total_credits)``.

    Each line is a dict with ``debit`` and ``credit``; exactly one of the two
    must be positive and neither may be negative.
    """
    if not lines or len(lines) < 2:
        raise BalanceError("Journal entry must have at least 2 lines")

    total_dr = _ZERO
    total_cr = _ZERO
    for ln in lines:
        dr = _amount(ln.get("debit"))
        cr = _amount(ln.get("credit"))
        if dr < 0 or cr < 0:
            raise BalanceError("Debit and credit amounts must be non-negative")
        if dr > 0 and cr > 0:
            raise BalanceError("A line cannot have both debit and credit amounts")
        if dr == 0 and cr == 0:
            raise BalanceError("A line must have either debit or credit amount")
        total_dr += dr
        total_cr += cr

    if abs(total_dr - total_cr) >= BALANCE_TOLERANCE:
        raise BalanceError(
            f"Journal entry is not balanced. "
            f"Debits: {_plain(total_dr)}, Credits: {_plain(total_cr)}"
        )
    return total_dr, total_cr


async def _validate_accounts(
    db: AsyncSession, account_ids: list[int], *, tenant_id: int, company_id: int
) -> None:
    """Check every account exists in the tenant/company and is active."""
    result = await db.execute(
        select(Account).where(
            Account.id.in_(set(account_ids)),
            Account.tenant_id == tenant_id,
            Account.company_id == company_id,
        )
    )
    accounts = {a.id: a for a in result.scalars().all()}
    for aid in account_ids:
        acct = accounts.get(aid)
        if acct is None:
            raise AccountInactiveError(f"Account {aid} not found")
        if not acct.is_active:
            raise AccountInactiveError(
                f"Account {acct.account_code} - {acct.name} is inactive"
            )


async def _resolve_open_period(
    db: AsyncSession,
    on: date,
    *,
    tenant_id: int,
    company_id: int,
    missing_msg: str = "No fiscal period found for entry date",
    closed_msg: str = "Cannot post to closed or locked fiscal period",
) -> FiscalPeriod:
    """Owning period for *on*; refused if any containing period is not OPEN."""
    periods = await find_periods_containing(
        db, on, tenant_id=tenant_id, company_id=company_id
    )
    if not periods:
        raise PeriodNotFoundError(missing_msg)
    if any(p.status in (PeriodStatus.CLOSED, PeriodStatus.LOCKED) for p in periods):
        raise PeriodClosedError(closed_msg)
    return periods[0]


def _build_lines(lines: list[dict[str, Any]]) -> list[JournalLine]:
    return [
        JournalLine(
            line_number=idx,
            account_id=ln["account_id"],
            debit=_amount(ln.get("debit")),
            credit=_amount(ln.get("credit")),
            description=ln.get("description"),
            reference=ln.get("reference"),
        )
        for idx, ln in enumerate(lines, start=1)
    ]


async def _insert_entry(
    db: AsyncSession,
    *,
    period: FiscalPeriod,
    tenant_id: int,
    company_id: int,
    entry_date: date,
    description: str,
    lines: list[dict[str, Any]],
    entry_type: JournalEntryType,
    reference: str | None,
    created_by: int | None,
    auto_post: bool,
) -> JournalEntry:
    entry_number = await sequence.next_document_number(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        prefix=sequence.JOURNAL_ENTRY,
        on_date=entry_date,
    )
    now = datetime.now(timezone.utc)
    entry = JournalEntry(
        tenant_id=tenant_id,
        company_id=company_id,
        entry_number=entry_number,
        entry_date=entry_date,
        fiscal_period_id=period.id,
        entry_type=entry_type,
        reference=reference,
        description=description,
        status=JournalEntryStatus.POSTED if auto_post else JournalEntryStatus.DRAFT,
        created_by=created_by,
        posted_by=created_by if auto_post else None,
        posted_at=now if auto_post else None,
        lines=_build_lines(lines),
    )
    db.add(entry)
    await db.flush()
    await db.refresh(entry, ["lines"])
    logger.info("Created journal entry %s (status=%s)", entry.entry_number, entry.status.value)
    return entry


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_journal_entry(
    db: AsyncSession, entry_id: int, *, tenant_id: int
) -> JournalEntry | None:
    """Load a journal entry with its lines."""
    result = await db.execute(
        select(JournalEntry)
        .where(JournalEntry.id == entry_id, JournalEntry.tenant_id == tenant_id)
        .options(selectinload(JournalEntry.lines))
    )
    return result.scalar_one_or_none()


async def _require_entry(db: AsyncSession, entry_id: int, tenant_id: int) -> JournalEntry:
    entry = await get_journal_entry(db, entry_id, tenant_id=tenant_id)
    if entry is None:
        raise EntryNotFoundError("Journal entry not found")
    return entry


async def list_journal_entries(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    status: JournalEntryStatus | None = None,
    entry_type: JournalEntryType | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    fiscal_period_id: int | None = None,
    account_id: int | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[JournalEntry]:
    """Entries newest first, lines eagerly loaded."""
    q = (
        select(JournalEntry)
        .where(JournalEntry.tenant_id == tenant_id, JournalEntry.company_id == company_id)
        .options(selectinload(JournalEntry.lines))
        .order_by(JournalEntry.entry_date.desc(), JournalEntry.entry_number.desc())
    )
    if status:
        q = q.where(JournalEntry.status == status)
    if entry_type:
        q = q.where(JournalEntry.entry_type == entry_type)
    if start_date:
        q = q.where(JournalEntry.entry_date >= start_date)
    if end_date:
        q = q.where(JournalEntry.entry_date <= end_date)
    if fiscal_period_id:
        q = q.where(JournalEntry.fiscal_period_id == fiscal_period_id)
    if account_id:
        q = q.where(
            exists().where(
                JournalLine.journal_entry_id == JournalEntry.id,
                JournalLine.account_id == account_id,
            )
        )
    if offset:
        q = q.offset(offset)
    if limit:
        q = q.limit(limit)

    result = await db.execute(q)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def create_journal_entry(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    entry_date: date,
    description: str,
    lines: list[dict[str, Any]],
    entry_type: JournalEntryType = JournalEntryType.MANUAL,
    reference: str | None = None,
    created_by: int | None = None,
    auto_post: bool = False,
) -> JournalEntry:
    """Create a new journal entry in DRAFT status.

    Parameters
    ----------
    lines : list of dicts
        Each dict must have ``account_id``, ``debit`` and ``credit``, and
        optionally ``description`` and ``reference``.
    auto_post : bool
        If True, the entry goes straight to POSTED (used for system-generated
        entries such as reversals and year-end closing).
    """
    validate_lines(lines)
    period = await _resolve_open_period(
        db, entry_date, tenant_id=tenant_id, company_id=company_id
    )
    await _validate_accounts(
        db, [ln["account_id"] for ln in lines], tenant_id=tenant_id, company_id=company_id
    )
    return await _insert_entry(
        db,
        period=period,
        tenant_id=tenant_id,
        company_id=company_id,
        entry_date=entry_date,
        description=description,
        lines=lines,
        entry_type=entry_type,
        reference=reference,
        created_by=created_by,
        auto_post=auto_post,
    )


async def update_journal_entry(
    db: AsyncSession,
    entry_id: int,
    *,
    tenant_id: int,
    entry_date: date | None = None,
    description: str | None = None,
    reference: str | None = None,
    lines: list[dict[str, Any]] | None = None,
) -> JournalEntry:
    """Edit a DRAFT entry.  Supplied lines replace the old set entirely."""
    entry = await _require_entry(db, entry_id, tenant_id)
    if entry.status != JournalEntryStatus.DRAFT:
        raise StatusTransitionError("Can only update draft journal entries")

    if lines is not None:
        validate_lines(lines)
        await _validate_accounts(
            db,
            [ln["account_id"] for ln in lines],
            tenant_id=tenant_id,
            company_id=entry.company_id,
        )

    if entry_date is not None and entry_date != entry.entry_date:
        period = await _resolve_open_period(
            db, entry_date, tenant_id=tenant_id, company_id=entry.company_id
        )
        entry.entry_date = entry_date
        entry.fiscal_period_id = period.id
    if description is not None:
        entry.description = description
    if reference is not None:
        entry.reference = reference

    if lines is not None:
        entry.lines.clear()
        await db.flush()
        entry.lines.extend(_build_lines(lines))

    await db.flush()
    await db.refresh(entry, ["lines"])
    logger.info("Updated journal entry %s", entry.entry_number)
    return entry


async def post_entry(
    db: AsyncSession, entry_id: int, *, tenant_id: int, user_id: int | None = None
) -> JournalEntry:
    """Transition DRAFT → POSTED.

    Re-checks the fiscal period, whose status may have changed since the
    entry was created.
    """
    entry = await _require_entry(db, entry_id, tenant_id)
    if entry.status != JournalEntryStatus.DRAFT:
        raise StatusTransitionError("Can only post draft journal entries")

    await _resolve_open_period(
        db, entry.entry_date, tenant_id=tenant_id, company_id=entry.company_id
    )

    entry.status = JournalEntryStatus.POSTED
    entry.posted_by = user_id
    entry.posted_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Posted %s by user %s", entry.entry_number, user_id)
    return entry


async def create_and_post_entry(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    entry_date: date,
    description: str,
    lines: list[dict[str, Any]],
    entry_type: JournalEntryType = JournalEntryType.SYSTEM,
    reference: str | None = None,
    created_by: int | None = None,
) -> JournalEntry:
    """Create a DRAFT entry and post it straight away (subledger adapters)."""
    entry = await create_journal_entry(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        entry_date=entry_date,
        description=description,
        lines=lines,
        entry_type=entry_type,
        reference=reference,
        created_by=created_by,
    )
    return await post_entry(db, entry.id, tenant_id=tenant_id, user_id=created_by)


async def reverse_entry(
    db: AsyncSession,
    entry_id: int,
    *,
    tenant_id: int,
    reversal_date: date | None = None,
    description: str | None = None,
    user_id: int | None = None,
) -> JournalEntry:
    """Reverse a posted entry by creating a new mirror entry.

    The mirror is posted immediately and the original is marked REVERSED.
    Both writes share one savepoint, so the mirror never exists without the
    back-link on the original.
    """
    original = await _require_entry(db, entry_id, tenant_id)
    if original.status != JournalEntryStatus.POSTED:
        raise StatusTransitionError("Can only reverse posted journal entries")
    if original.reversed_at is not None or original.reversing_entry_id is not None:
        raise StatusTransitionError("Journal entry has already been reversed")

    on = reversal_date or date.today()
    period = await _resolve_open_period(
        db,
        on,
        tenant_id=tenant_id,
        company_id=original.company_id,
        missing_msg="No fiscal period found for reversal date",
        closed_msg="Cannot post reversal to closed or locked fiscal period",
    )

    # Flip debits and credits
    mirror_lines = [
        {
            "account_id": ln.account_id,
            "debit": ln.credit,
            "credit": ln.debit,
            "description": f"Reversal of {original.entry_number}",
            "reference": ln.reference,
        }
        for ln in original.lines
    ]

    async with db.begin_nested():
        reversal = await _insert_entry(
            db,
            period=period,
            tenant_id=tenant_id,
            company_id=original.company_id,
            entry_date=on,
            description=description
            or f"Reversal of {original.entry_number} - {original.description}",
            lines=mirror_lines,
            entry_type=JournalEntryType.ADJUSTMENT,
            reference=original.entry_number,
            created_by=user_id,
            auto_post=True,
        )
        reversal.reversal_of_id = original.id
        original.status = JournalEntryStatus.REVERSED
        original.reversing_entry_id = reversal.id
        original.reversed_by = user_id
        original.reversed_at = datetime.now(timezone.utc)
        await db.flush()

    logger.info(
        "Reversed %s -> %s by user %s",
        original.entry_number,
        reversal.entry_number,
        user_id,
    )
    return reversal


async def delete_journal_entry(
    db: AsyncSession, entry_id: int, *, tenant_id: int
) -> None:
    entry = await _require_entry(db, entry_id, tenant_id)
    if entry.status != JournalEntryStatus.DRAFT:
        raise StatusTransitionError("Can only delete draft journal entries")
    await db.delete(entry)
    await db.flush()
    logger.info("Deleted draft journal entry %s", entry.entry_number)
