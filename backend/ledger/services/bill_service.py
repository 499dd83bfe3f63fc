"""Accounts payable bills.

Mirror image of invoices: DRAFT ──approve──▶ APPROVED, then payments move
the bill to PARTIAL / PAID.  Posting to the GL:

    Dr Expense (per line)       line subtotal
    Dr VAT Receivable           tax total (when non-zero)
        Cr Accounts Payable         total
"""

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ledger.errors import (
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationFailedError,
)
from ledger.models.gl import AccountCategory, AccountSubCategory, JournalEntry
from ledger.models.subledger import Bill, BillLine, BillStatus, Supplier, SupplierPayment
from ledger.services import sequence
from ledger.services.gl.coa_service import find_account_by_role
from ledger.services.gl.journal_engine import create_and_post_entry
from ledger.services.invoice_service import price_lines

logger = logging.getLogger(__name__)


class BillError(LedgerError):
    """Bill error."""


class BillNotFoundError(BillError, NotFoundError):
    pass


class BillValidationError(BillError, ValidationFailedError):
    pass


class BillStateError(BillError, StateConflictError):
    pass


class BillAccountError(BillError, ReferentialIntegrityError):
    pass


async def get_bill(db: AsyncSession, bill_id: int, *, tenant_id: int) -> Bill | None:
    result = await db.execute(
        select(Bill)
        .where(Bill.id == bill_id, Bill.tenant_id == tenant_id)
        .options(selectinload(Bill.lines))
    )
    return result.scalar_one_or_none()


async def _require_bill(db: AsyncSession, bill_id: int, tenant_id: int) -> Bill:
    bill = await get_bill(db, bill_id, tenant_id=tenant_id)
    if bill is None:
        raise BillNotFoundError("Bill not found")
    return bill


async def list_bills(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    supplier_id: int | None = None,
    status: BillStatus | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[Bill]:
    q = (
        select(Bill)
        .where(Bill.tenant_id == tenant_id, Bill.company_id == company_id)
        .options(selectinload(Bill.lines))
        .order_by(Bill.bill_date.desc(), Bill.bill_number.desc())
    )
    if supplier_id:
        q = q.where(Bill.supplier_id == supplier_id)
    if status:
        q = q.where(Bill.status == status)
    if start_date:
        q = q.where(Bill.bill_date >= start_date)
    if end_date:
        q = q.where(Bill.bill_date <= end_date)
    result = await db.execute(q)
    return list(result.scalars().all())


async def create_bill(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    supplier_id: int,
    bill_date: date,
    lines: list[dict[str, Any]],
    due_date: date | None = None,
    supplier_reference: str | None = None,
    description: str | None = None,
    notes: str | None = None,
    created_by: int | None = None,
) -> Bill:
    if not lines:
        raise BillValidationError("Bill must have at least one line item")

    result = await db.execute(
        select(Supplier).where(
            Supplier.id == supplier_id,
            Supplier.tenant_id == tenant_id,
            Supplier.company_id == company_id,
        )
    )
    supplier = result.scalar_one_or_none()
    if supplier is None:
        raise BillNotFoundError("Supplier not found")
    if not supplier.is_active:
        raise BillValidationError("Cannot create bill for inactive supplier")

    rows, subtotal, tax_total = price_lines(BillLine, lines)
    bill_number = await sequence.next_document_number(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        prefix=sequence.BILL,
        on_date=bill_date,
    )
    bill = Bill(
        tenant_id=tenant_id,
        company_id=company_id,
        supplier_id=supplier_id,
        bill_number=bill_number,
        supplier_reference=supplier_reference,
        bill_date=bill_date,
        due_date=due_date or bill_date + timedelta(days=supplier.payment_terms),
        description=description,
        subtotal=subtotal,
        tax_amount=tax_total,
        total_amount=subtotal + tax_total,
        paid_amount=Decimal("0"),
        currency_code=supplier.currency_code,
        status=BillStatus.DRAFT,
        notes=notes,
        created_by=created_by,
        lines=rows,
    )
    db.add(bill)
    await db.flush()
    await db.refresh(bill, ["lines"])
    logger.info("Created bill %s for supplier %s", bill.bill_number, supplier.code)
    return bill


async def update_bill(
    db: AsyncSession,
    bill_id: int,
    *,
    tenant_id: int,
    lines: list[dict[str, Any]] | None = None,
    **fields,
) -> Bill:
    bill = await _require_bill(db, bill_id, tenant_id)
    if bill.status != BillStatus.DRAFT:
        raise BillStateError("Can only update draft bills")

    allowed = {"bill_date", "due_date", "supplier_reference", "description", "notes"}
    unknown = set(fields) - allowed
    if unknown:
        raise BillValidationError(f"Fields cannot be updated: {sorted(unknown)}")

    if lines is not None:
        if not lines:
            raise BillValidationError("Bill must have at least one line item")
        rows, subtotal, tax_total = price_lines(BillLine, lines)
        bill.lines.clear()
        await db.flush()
        bill.lines.extend(rows)
        bill.subtotal = subtotal
        bill.tax_amount = tax_total
        bill.total_amount = subtotal + tax_total

    for key, value in fields.items():
        setattr(bill, key, value)

    await db.flush()
    await db.refresh(bill, ["lines"])
    return bill


async def delete_bill(db: AsyncSession, bill_id: int, *, tenant_id: int) -> None:
    bill = await _require_bill(db, bill_id, tenant_id)
    if bill.status != BillStatus.DRAFT:
        raise BillStateError("Can only delete draft bills")
    await db.delete(bill)
    await db.flush()
    logger.info("Deleted draft bill %s", bill.bill_number)


async def approve_bill(
    db: AsyncSession, bill_id: int, *, tenant_id: int, user_id: int | None = None
) -> Bill:
    """Transition DRAFT → APPROVED."""
    bill = await _require_bill(db, bill_id, tenant_id)
    if bill.status != BillStatus.DRAFT:
        raise BillStateError("Can only approve draft bills")
    bill.status = BillStatus.APPROVED
    bill.approved_by = user_id
    bill.approved_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Approved bill %s", bill.bill_number)
    return bill


async def cancel_bill(db: AsyncSession, bill_id: int, *, tenant_id: int) -> Bill:
    bill = await _require_bill(db, bill_id, tenant_id)
    if bill.status in (BillStatus.PAID, BillStatus.CANCELLED):
        raise BillStateError(f"Cannot cancel {bill.status.value} bill")
    has_payments = await db.execute(
        select(exists().where(SupplierPayment.bill_id == bill.id))
    )
    if has_payments.scalar():
        raise BillStateError("Cannot cancel bill with recorded payments")
    bill.status = BillStatus.CANCELLED
    await db.flush()
    logger.info("Cancelled bill %s", bill.bill_number)
    return bill


async def mark_overdue_bills(
    db: AsyncSession, *, tenant_id: int, company_id: int, as_of: date | None = None
) -> int:
    today = as_of or date.today()
    result = await db.execute(
        update(Bill)
        .where(
            Bill.tenant_id == tenant_id,
            Bill.company_id == company_id,
            Bill.status.in_([BillStatus.APPROVED, BillStatus.PARTIAL]),
            Bill.due_date < today,
        )
        .values(status=BillStatus.OVERDUE)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        logger.info("Marked %d bills overdue", result.rowcount)
    return result.rowcount


async def post_bill_to_gl(
    db: AsyncSession, bill_id: int, *, tenant_id: int, user_id: int | None = None
) -> JournalEntry:
    """Post an approved bill to the general ledger (once)."""
    bill = await _require_bill(db, bill_id, tenant_id)
    if bill.status == BillStatus.DRAFT:
        raise BillStateError("Cannot post draft bill to GL. Approve it first.")
    if bill.journal_entry_id:
        raise BillStateError("Bill already posted to GL")

    company_id = bill.company_id
    supplier = (
        await db.execute(select(Supplier).where(Supplier.id == bill.supplier_id))
    ).scalar_one()

    ap_account = await find_account_by_role(
        db, AccountSubCategory.ACCOUNTS_PAYABLE, tenant_id=tenant_id, company_id=company_id
    )
    if ap_account is None:
        raise BillAccountError("Accounts Payable account not found")

    lines = [{
        "account_id": ap_account.id,
        "debit": Decimal("0"),
        "credit": bill.total_amount,
        "description": f"Bill {bill.bill_number} - {supplier.name}",
        "reference": bill.bill_number,
    }]

    default_expense = None
    for ln in bill.lines:
        account_id = ln.account_id
        if account_id is None:
            if default_expense is None:
                default_expense = await find_account_by_role(
                    db,
                    AccountSubCategory.OPERATING_EXPENSES,
                    tenant_id=tenant_id,
                    company_id=company_id,
                    account_category=AccountCategory.EXPENSE,
                )
                if default_expense is None:
                    raise BillAccountError("Default expense account not found")
            account_id = default_expense.id
        amount = ln.line_total - ln.tax_amount
        if amount == 0:
            continue
        lines.append({
            "account_id": account_id,
            "debit": amount,
            "credit": Decimal("0"),
            "description": ln.description,
            "reference": bill.bill_number,
        })

    if bill.tax_amount > 0:
        tax_account = await find_account_by_role(
            db, AccountSubCategory.TAX_RECEIVABLE, tenant_id=tenant_id, company_id=company_id
        )
        if tax_account is None:
            raise BillAccountError("Tax Receivable account not found")
        lines.append({
            "account_id": tax_account.id,
            "debit": bill.tax_amount,
            "credit": Decimal("0"),
            "description": f"Tax on Bill {bill.bill_number}",
            "reference": bill.bill_number,
        })

    entry = await create_and_post_entry(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        entry_date=bill.bill_date,
        reference=bill.bill_number,
        description=f"Bill {bill.bill_number} - {supplier.name}",
        lines=lines,
        created_by=user_id,
    )
    bill.journal_entry_id = entry.id
    await db.flush()
    logger.info("Bill %s posted to GL as %s", bill.bill_number, entry.entry_number)
    return entry
