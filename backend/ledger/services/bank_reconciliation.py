"""Bank statement import and reconciliation.

Provides:
- Idempotent statement import keyed by ``import_batch``
- Reconciliation start: GL balance plus unreconciled bank activity,
  compared against the statement balance
- Manual match / unmatch of bank lines to journal entries
- Completion guarded on zero outstanding lines and a zero difference
- Fuzzy match suggestions (date window and amount band on the linked
  GL account)
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ledger.config import settings
from ledger.errors import (
    LedgerError,
    NotFoundError,
    StateConflictError,
    ValidationFailedError,
)
from ledger.models.bank import (
    BankAccount,
    BankReconciliation,
    BankTransaction,
    ReconciliationStatus,
)
from ledger.models.gl import (
    BALANCE_TOLERANCE,
    JournalEntry,
    JournalEntryStatus,
    JournalLine,
)
from ledger.services.bank_account_service import require_bank_account
from ledger.services.gl.balance_service import get_account_balance

logger = logging.getLogger(__name__)


class ReconciliationError(LedgerError):
    """Bank reconciliation error."""


class ReconciliationNotFoundError(ReconciliationError, NotFoundError):
    pass


class DuplicateImportError(ReconciliationError, ValidationFailedError):
    pass


class StatementLineError(ReconciliationError, ValidationFailedError):
    pass


class ReconciliationStateError(ReconciliationError, StateConflictError):
    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _get_transaction(
    db: AsyncSession, transaction_id: int, tenant_id: int
) -> BankTransaction:
    result = await db.execute(
        select(BankTransaction).where(
            BankTransaction.id == transaction_id, BankTransaction.tenant_id == tenant_id
        )
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise ReconciliationNotFoundError("Bank transaction not found")
    return txn


async def _count_unreconciled(
    db: AsyncSession, bank_account_id: int, on_or_before: date
) -> int:
    result = await db.execute(
        select(sa_func.count(BankTransaction.id)).where(
            BankTransaction.bank_account_id == bank_account_id,
            BankTransaction.is_reconciled.is_(False),
            BankTransaction.transaction_date <= on_or_before,
        )
    )
    return result.scalar() or 0


# ---------------------------------------------------------------------------
# Statement import
# ---------------------------------------------------------------------------

async def import_bank_statement(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    bank_account_id: int,
    import_batch: str,
    transactions: list[dict[str, Any]],
) -> list[BankTransaction]:
    """Insert a batch of statement lines, unreconciled.

    Each dict carries ``transaction_date``, ``description``, ``debit`` and
    ``credit`` plus optional ``value_date``, ``reference`` and ``balance``.
    Re-importing a batch identifier for the same account is rejected.
    """
    bank_account = await require_bank_account(db, bank_account_id, tenant_id=tenant_id)
    if bank_account.company_id != company_id:
        raise ReconciliationNotFoundError("Bank account not found")

    existing = await db.execute(
        select(BankTransaction.id)
        .where(
            BankTransaction.tenant_id == tenant_id,
            BankTransaction.company_id == company_id,
            BankTransaction.bank_account_id == bank_account_id,
            BankTransaction.import_batch == import_batch,
        )
        .limit(1)
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateImportError(
            "Import batch already exists. Use a different batch identifier."
        )

    rows = []
    for txn in transactions:
        debit = Decimal(str(txn.get("debit") or 0))
        credit = Decimal(str(txn.get("credit") or 0))
        if debit < 0 or credit < 0:
            raise StatementLineError("Statement amounts must be non-negative")
        if debit > 0 and credit > 0:
            raise StatementLineError("A statement line cannot have both debit and credit amounts")
        if debit == 0 and credit == 0:
            raise StatementLineError("A statement line must have either debit or credit amount")
        balance = txn.get("balance")
        rows.append(BankTransaction(
            tenant_id=tenant_id,
            company_id=company_id,
            bank_account_id=bank_account_id,
            transaction_date=txn["transaction_date"],
            value_date=txn.get("value_date"),
            description=txn["description"],
            reference=txn.get("reference"),
            debit=debit,
            credit=credit,
            running_balance=Decimal(str(balance)) if balance is not None else None,
            import_batch=import_batch,
            is_reconciled=False,
        ))
    db.add_all(rows)
    await db.flush()
    logger.info(
        "Imported %d bank transactions for account %s (batch %s)",
        len(rows), bank_account.account_number, import_batch,
    )
    return rows


async def list_bank_transactions(
    db: AsyncSession,
    bank_account_id: int,
    *,
    tenant_id: int,
    is_reconciled: bool | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    import_batch: str | None = None,
) -> list[BankTransaction]:
    q = (
        select(BankTransaction)
        .where(
            BankTransaction.tenant_id == tenant_id,
            BankTransaction.bank_account_id == bank_account_id,
        )
        .order_by(BankTransaction.transaction_date, BankTransaction.id)
    )
    if is_reconciled is not None:
        q = q.where(BankTransaction.is_reconciled == is_reconciled)
    if start_date:
        q = q.where(BankTransaction.transaction_date >= start_date)
    if end_date:
        q = q.where(BankTransaction.transaction_date <= end_date)
    if import_batch:
        q = q.where(BankTransaction.import_batch == import_batch)
    result = await db.execute(q)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Reconciliation lifecycle
# ---------------------------------------------------------------------------

async def start_reconciliation(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    bank_account_id: int,
    statement_date: date,
    statement_balance: Decimal,
    user_id: int | None = None,
    notes: str | None = None,
) -> BankReconciliation:
    """Open a reconciliation against a bank statement.

    ``adjusted_gl_balance`` = GL balance as of the statement date plus every
    unreconciled bank line dated on or before it (debit - credit);
    ``difference`` = statement balance - adjusted GL balance.
    """
    bank_account = await require_bank_account(db, bank_account_id, tenant_id=tenant_id)
    if bank_account.company_id != company_id:
        raise ReconciliationNotFoundError("Bank account not found")

    gl_balance = await get_account_balance(
        db,
        bank_account.gl_account_id,
        tenant_id=tenant_id,
        company_id=company_id,
        as_of=statement_date,
    )

    result = await db.execute(
        select(
            sa_func.coalesce(sa_func.sum(BankTransaction.debit), 0),
            sa_func.coalesce(sa_func.sum(BankTransaction.credit), 0),
        ).where(
            BankTransaction.bank_account_id == bank_account_id,
            BankTransaction.is_reconciled.is_(False),
            BankTransaction.transaction_date <= statement_date,
        )
    )
    dr, cr = result.one()
    adjusted = gl_balance + Decimal(str(dr)) - Decimal(str(cr))
    statement_balance = Decimal(str(statement_balance))

    reconciliation = BankReconciliation(
        tenant_id=tenant_id,
        company_id=company_id,
        bank_account_id=bank_account_id,
        reconciliation_date=date.today(),
        statement_date=statement_date,
        statement_balance=statement_balance,
        gl_balance=gl_balance,
        adjusted_gl_balance=adjusted,
        difference=statement_balance - adjusted,
        status=ReconciliationStatus.IN_PROGRESS,
        reconciled_by=user_id,
        notes=notes,
    )
    db.add(reconciliation)
    await db.flush()
    await db.refresh(reconciliation)
    logger.info(
        "Started reconciliation for bank account %s (difference %s)",
        bank_account.account_number, reconciliation.difference,
    )
    return reconciliation


async def get_reconciliation(
    db: AsyncSession, reconciliation_id: int, *, tenant_id: int
) -> BankReconciliation | None:
    result = await db.execute(
        select(BankReconciliation).where(
            BankReconciliation.id == reconciliation_id,
            BankReconciliation.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


async def _require_reconciliation(
    db: AsyncSession, reconciliation_id: int, tenant_id: int
) -> BankReconciliation:
    reconciliation = await get_reconciliation(db, reconciliation_id, tenant_id=tenant_id)
    if reconciliation is None:
        raise ReconciliationNotFoundError("Reconciliation not found")
    return reconciliation


async def list_reconciliations(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    bank_account_id: int | None = None,
    status: ReconciliationStatus | None = None,
) -> list[BankReconciliation]:
    q = (
        select(BankReconciliation)
        .where(
            BankReconciliation.tenant_id == tenant_id,
            BankReconciliation.company_id == company_id,
        )
        .order_by(BankReconciliation.statement_date.desc(), BankReconciliation.id.desc())
    )
    if bank_account_id:
        q = q.where(BankReconciliation.bank_account_id == bank_account_id)
    if status:
        q = q.where(BankReconciliation.status == status)
    result = await db.execute(q)
    return list(result.scalars().all())


async def match_transaction(
    db: AsyncSession,
    reconciliation_id: int,
    bank_transaction_id: int,
    *,
    tenant_id: int,
    journal_entry_id: int | None = None,
) -> BankTransaction:
    """Mark a bank line reconciled, optionally linking one journal entry."""
    reconciliation = await _require_reconciliation(db, reconciliation_id, tenant_id)
    if reconciliation.status == ReconciliationStatus.COMPLETED:
        raise ReconciliationStateError("Cannot modify completed reconciliation")

    txn = await _get_transaction(db, bank_transaction_id, tenant_id)
    if txn.bank_account_id != reconciliation.bank_account_id:
        raise ReconciliationNotFoundError("Bank transaction not found")
    if txn.is_reconciled:
        raise ReconciliationStateError("Transaction is already reconciled")

    if journal_entry_id is not None:
        result = await db.execute(
            select(JournalEntry.id).where(
                JournalEntry.id == journal_entry_id,
                JournalEntry.tenant_id == tenant_id,
                JournalEntry.company_id == reconciliation.company_id,
            )
        )
        if result.scalar_one_or_none() is None:
            raise ReconciliationNotFoundError("Journal entry not found")

    txn.is_reconciled = True
    txn.reconciled_at = datetime.now(timezone.utc)
    txn.reconciliation_id = reconciliation.id
    txn.journal_entry_id = journal_entry_id
    await db.flush()
    logger.info(
        "Matched bank transaction %d in reconciliation %d", txn.id, reconciliation.id
    )
    return txn


async def unmatch_transaction(
    db: AsyncSession, bank_transaction_id: int, *, tenant_id: int
) -> BankTransaction:
    txn = await _get_transaction(db, bank_transaction_id, tenant_id)
    if not txn.is_reconciled:
        raise ReconciliationStateError("Transaction is not reconciled")

    if txn.reconciliation_id is not None:
        reconciliation = await get_reconciliation(db, txn.reconciliation_id, tenant_id=tenant_id)
        if reconciliation and reconciliation.status == ReconciliationStatus.COMPLETED:
            raise ReconciliationStateError(
                "Cannot unmatch transaction from completed reconciliation"
            )

    txn.is_reconciled = False
    txn.reconciled_at = None
    txn.reconciliation_id = None
    txn.journal_entry_id = None
    await db.flush()
    logger.info("Unmatched bank transaction %d", txn.id)
    return txn


async def complete_reconciliation(
    db: AsyncSession,
    reconciliation_id: int,
    *,
    tenant_id: int,
    user_id: int | None = None,
) -> BankReconciliation:
    """IN_PROGRESS → COMPLETED; stamps the bank account's last reconciled balance."""
    reconciliation = await _require_reconciliation(db, reconciliation_id, tenant_id)
    if reconciliation.status == ReconciliationStatus.COMPLETED:
        raise ReconciliationStateError("Reconciliation already completed")

    outstanding = await _count_unreconciled(
        db, reconciliation.bank_account_id, reconciliation.statement_date
    )
    if outstanding > 0:
        raise ReconciliationStateError(
            f"Cannot complete reconciliation. {outstanding} unreconciled transactions remaining."
        )
    if abs(reconciliation.difference) >= BALANCE_TOLERANCE:
        raise ReconciliationStateError(
            f"Cannot complete reconciliation. Difference of {reconciliation.difference} "
            f"must be resolved."
        )

    now = datetime.now(timezone.utc)
    reconciliation.status = ReconciliationStatus.COMPLETED
    reconciliation.completed_at = now
    if user_id is not None:
        reconciliation.reconciled_by = user_id

    bank_account = (
        await db.execute(
            select(BankAccount).where(BankAccount.id == reconciliation.bank_account_id)
        )
    ).scalar_one()
    bank_account.last_reconciled_at = now
    bank_account.last_reconciled_balance = reconciliation.statement_balance
    await db.flush()
    logger.info(
        "Completed reconciliation %d for bank account %s",
        reconciliation.id, bank_account.account_number,
    )
    return reconciliation


# ---------------------------------------------------------------------------
# Match suggestions
# ---------------------------------------------------------------------------

async def suggest_matches(
    db: AsyncSession,
    bank_transaction_id: int,
    *,
    tenant_id: int,
    company_id: int,
) -> list[dict]:
    """Posted entries that plausibly correspond to a bank line.

    Searches entries within ``settings.reconciliation_match_window_days`` of
    the transaction date whose line on the linked GL account is within
    ``settings.reconciliation_amount_tolerance`` of the amount (debit side
    for bank debits, credit side for bank credits).  Best matches first.
    """
    txn = await _get_transaction(db, bank_transaction_id, tenant_id)
    if txn.company_id != company_id:
        raise ReconciliationNotFoundError("Bank transaction not found")
    bank_account = await require_bank_account(db, txn.bank_account_id, tenant_id=tenant_id)

    is_debit = txn.debit > 0
    amount = txn.debit if is_debit else txn.credit
    if amount == 0:
        return []
    tolerance = settings.reconciliation_amount_tolerance
    window = timedelta(days=settings.reconciliation_match_window_days)
    low, high = amount * (1 - tolerance), amount * (1 + tolerance)
    side = JournalLine.debit if is_debit else JournalLine.credit

    result = await db.execute(
        select(JournalLine, JournalEntry)
        .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
        .where(
            JournalEntry.tenant_id == tenant_id,
            JournalEntry.company_id == company_id,
            JournalEntry.status == JournalEntryStatus.POSTED,
            JournalEntry.entry_date >= txn.transaction_date - window,
            JournalEntry.entry_date <= txn.transaction_date + window,
            JournalLine.account_id == bank_account.gl_account_id,
            side >= low,
            side <= high,
        )
        .options(selectinload(JournalEntry.lines))
    )

    suggestions: dict[int, dict] = {}
    for line, entry in result.all():
        line_amount = line.debit if is_debit else line.credit
        days_apart = abs((entry.entry_date - txn.transaction_date).days)
        amount_score = 1 - float(abs(line_amount - amount) / amount) / float(tolerance or 1)
        date_score = 1 - days_apart / (window.days + 1)
        confidence = round(0.7 * amount_score + 0.3 * date_score, 2)
        best = suggestions.get(entry.id)
        if best is None or confidence > best["match_confidence"]:
            suggestions[entry.id] = {
                "entry": entry,
                "entry_id": entry.id,
                "entry_number": entry.entry_number,
                "entry_date": entry.entry_date,
                "amount": line_amount,
                "days_apart": days_apart,
                "match_confidence": confidence,
            }

    ranked = sorted(
        suggestions.values(),
        key=lambda s: (-s["match_confidence"], s["days_apart"], s["entry_number"]),
    )
    return ranked[: settings.reconciliation_suggestion_limit]
