"""Accounts receivable invoices.

Lifecycle::

    DRAFT ──send──▶ SENT ──payment──▶ PARTIAL ──payment──▶ PAID
      │               │                  │
      │               └──past due──▶ OVERDUE
      └──cancel──▶ CANCELLED

Posting to the GL is a separate, one-time action available once the
invoice has left DRAFT:

    Dr Accounts Receivable      total
        Cr Revenue (per line)       line subtotal
        Cr VAT Payable              tax total (when non-zero)
"""

import logging
from datetime import date, timedelta
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
from ledger.models.subledger import (
    Customer,
    CustomerPayment,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
)
from ledger.services import sequence
from ledger.services.gl.coa_service import find_account_by_role
from ledger.services.gl.journal_engine import create_and_post_entry
from ledger.services.tax_service import calculate_tax, round_money

logger = logging.getLogger(__name__)


class InvoiceError(LedgerError):
    """Invoice error."""


class InvoiceNotFoundError(InvoiceError, NotFoundError):
    pass


class InvoiceValidationError(InvoiceError, ValidationFailedError):
    pass


class InvoiceStateError(InvoiceError, StateConflictError):
    pass


class InvoiceAccountError(InvoiceError, ReferentialIntegrityError):
    """A posting account could not be resolved."""


# ---------------------------------------------------------------------------
# Line pricing (shared with bills)
# ---------------------------------------------------------------------------

def price_lines(
    line_cls, lines: list[dict[str, Any]]
) -> tuple[list, Decimal, Decimal]:
    """Build *line_cls* rows and return ``(rows, subtotal, tax_total)``.

    Each input dict carries ``description``, ``quantity``, ``unit_price`` and
    optionally ``tax_rate`` (percent) and ``account_id``.
    """
    rows = []
    subtotal = Decimal("0")
    tax_total = Decimal("0")
    for idx, ln in enumerate(lines, start=1):
        qty = Decimal(str(ln["quantity"]))
        price = Decimal(str(ln["unit_price"]))
        rate = Decimal(str(ln.get("tax_rate") or 0))
        base = round_money(qty * price)
        tax, total = calculate_tax(base, rate)
        subtotal += base
        tax_total += tax
        rows.append(line_cls(
            line_number=idx,
            description=ln["description"],
            quantity=qty,
            unit_price=price,
            tax_rate=rate,
            tax_amount=tax,
            line_total=total,
            account_id=ln.get("account_id"),
        ))
    return rows, subtotal, tax_total


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_invoice(db: AsyncSession, invoice_id: int, *, tenant_id: int) -> Invoice | None:
    result = await db.execute(
        select(Invoice)
        .where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
        .options(selectinload(Invoice.lines))
    )
    return result.scalar_one_or_none()


async def _require_invoice(db: AsyncSession, invoice_id: int, tenant_id: int) -> Invoice:
    invoice = await get_invoice(db, invoice_id, tenant_id=tenant_id)
    if invoice is None:
        raise InvoiceNotFoundError("Invoice not found")
    return invoice


async def list_invoices(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    customer_id: int | None = None,
    status: InvoiceStatus | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[Invoice]:
    q = (
        select(Invoice)
        .where(Invoice.tenant_id == tenant_id, Invoice.company_id == company_id)
        .options(selectinload(Invoice.lines))
        .order_by(Invoice.invoice_date.desc(), Invoice.invoice_number.desc())
    )
    if customer_id:
        q = q.where(Invoice.customer_id == customer_id)
    if status:
        q = q.where(Invoice.status == status)
    if start_date:
        q = q.where(Invoice.invoice_date >= start_date)
    if end_date:
        q = q.where(Invoice.invoice_date <= end_date)
    result = await db.execute(q)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def create_invoice(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    customer_id: int,
    invoice_date: date,
    lines: list[dict[str, Any]],
    due_date: date | None = None,
    reference: str | None = None,
    description: str | None = None,
    notes: str | None = None,
    created_by: int | None = None,
) -> Invoice:
    """Create a DRAFT invoice.  Due date defaults to the customer's payment terms."""
    if not lines:
        raise InvoiceValidationError("Invoice must have at least one line item")

    result = await db.execute(
        select(Customer).where(
            Customer.id == customer_id,
            Customer.tenant_id == tenant_id,
            Customer.company_id == company_id,
        )
    )
    customer = result.scalar_one_or_none()
    if customer is None:
        raise InvoiceNotFoundError("Customer not found")
    if not customer.is_active:
        raise InvoiceValidationError("Cannot create invoice for inactive customer")

    rows, subtotal, tax_total = price_lines(InvoiceLine, lines)
    invoice_number = await sequence.next_document_number(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        prefix=sequence.INVOICE,
        on_date=invoice_date,
    )
    invoice = Invoice(
        tenant_id=tenant_id,
        company_id=company_id,
        customer_id=customer_id,
        invoice_number=invoice_number,
        invoice_date=invoice_date,
        due_date=due_date or invoice_date + timedelta(days=customer.payment_terms),
        reference=reference,
        description=description,
        subtotal=subtotal,
        tax_amount=tax_total,
        total_amount=subtotal + tax_total,
        paid_amount=Decimal("0"),
        currency_code=customer.currency_code,
        status=InvoiceStatus.DRAFT,
        notes=notes,
        created_by=created_by,
        lines=rows,
    )
    db.add(invoice)
    await db.flush()
    await db.refresh(invoice, ["lines"])
    logger.info("Created invoice %s for customer %s", invoice.invoice_number, customer.code)
    return invoice


async def update_invoice(
    db: AsyncSession,
    invoice_id: int,
    *,
    tenant_id: int,
    lines: list[dict[str, Any]] | None = None,
    **fields,
) -> Invoice:
    """Edit a DRAFT invoice.  Supplied lines replace the old set and reprice."""
    invoice = await _require_invoice(db, invoice_id, tenant_id)
    if invoice.status != InvoiceStatus.DRAFT:
        raise InvoiceStateError("Can only update draft invoices")

    allowed = {"invoice_date", "due_date", "reference", "description", "notes"}
    unknown = set(fields) - allowed
    if unknown:
        raise InvoiceValidationError(f"Fields cannot be updated: {sorted(unknown)}")

    if lines is not None:
        if not lines:
            raise InvoiceValidationError("Invoice must have at least one line item")
        rows, subtotal, tax_total = price_lines(InvoiceLine, lines)
        invoice.lines.clear()
        await db.flush()
        invoice.lines.extend(rows)
        invoice.subtotal = subtotal
        invoice.tax_amount = tax_total
        invoice.total_amount = subtotal + tax_total

    for key, value in fields.items():
        setattr(invoice, key, value)

    await db.flush()
    await db.refresh(invoice, ["lines"])
    logger.info("Updated invoice %s", invoice.invoice_number)
    return invoice


async def delete_invoice(db: AsyncSession, invoice_id: int, *, tenant_id: int) -> None:
    invoice = await _require_invoice(db, invoice_id, tenant_id)
    if invoice.status != InvoiceStatus.DRAFT:
        raise InvoiceStateError("Can only delete draft invoices")
    await db.delete(invoice)
    await db.flush()
    logger.info("Deleted draft invoice %s", invoice.invoice_number)


async def send_invoice(db: AsyncSession, invoice_id: int, *, tenant_id: int) -> Invoice:
    """Transition DRAFT → SENT."""
    invoice = await _require_invoice(db, invoice_id, tenant_id)
    if invoice.status != InvoiceStatus.DRAFT:
        raise InvoiceStateError("Can only send draft invoices")
    invoice.status = InvoiceStatus.SENT
    await db.flush()
    logger.info("Sent invoice %s", invoice.invoice_number)
    return invoice


async def cancel_invoice(db: AsyncSession, invoice_id: int, *, tenant_id: int) -> Invoice:
    invoice = await _require_invoice(db, invoice_id, tenant_id)
    if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
        raise InvoiceStateError(f"Cannot cancel {invoice.status.value} invoice")
    has_payments = await db.execute(
        select(exists().where(CustomerPayment.invoice_id == invoice.id))
    )
    if has_payments.scalar():
        raise InvoiceStateError("Cannot cancel invoice with recorded payments")
    invoice.status = InvoiceStatus.CANCELLED
    await db.flush()
    logger.info("Cancelled invoice %s", invoice.invoice_number)
    return invoice


async def mark_overdue_invoices(
    db: AsyncSession, *, tenant_id: int, company_id: int, as_of: date | None = None
) -> int:
    """Flag SENT / PARTIAL invoices past their due date as OVERDUE."""
    today = as_of or date.today()
    result = await db.execute(
        update(Invoice)
        .where(
            Invoice.tenant_id == tenant_id,
            Invoice.company_id == company_id,
            Invoice.status.in_([InvoiceStatus.SENT, InvoiceStatus.PARTIAL]),
            Invoice.due_date < today,
        )
        .values(status=InvoiceStatus.OVERDUE)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        logger.info("Marked %d invoices overdue", result.rowcount)
    return result.rowcount


# ---------------------------------------------------------------------------
# GL posting
# ---------------------------------------------------------------------------

async def post_invoice_to_gl(
    db: AsyncSession, invoice_id: int, *, tenant_id: int, user_id: int | None = None
) -> JournalEntry:
    """Post a sent invoice to the general ledger (once)."""
    invoice = await _require_invoice(db, invoice_id, tenant_id)
    if invoice.status == InvoiceStatus.DRAFT:
        raise InvoiceStateError("Cannot post draft invoice to GL. Send it first.")
    if invoice.journal_entry_id:
        raise InvoiceStateError("Invoice already posted to GL")

    company_id = invoice.company_id
    customer = (
        await db.execute(select(Customer).where(Customer.id == invoice.customer_id))
    ).scalar_one()

    ar_account = await find_account_by_role(
        db, AccountSubCategory.ACCOUNTS_RECEIVABLE, tenant_id=tenant_id, company_id=company_id
    )
    if ar_account is None:
        raise InvoiceAccountError("Accounts Receivable account not found")

    lines = [{
        "account_id": ar_account.id,
        "debit": invoice.total_amount,
        "credit": Decimal("0"),
        "description": f"Invoice {invoice.invoice_number} - {customer.name}",
        "reference": invoice.invoice_number,
    }]

    default_revenue = None
    for ln in invoice.lines:
        account_id = ln.account_id
        if account_id is None:
            if default_revenue is None:
                default_revenue = await find_account_by_role(
                    db,
                    AccountSubCategory.SALES,
                    tenant_id=tenant_id,
                    company_id=company_id,
                    account_category=AccountCategory.REVENUE,
                )
                if default_revenue is None:
                    raise InvoiceAccountError("Default revenue account not found")
            account_id = default_revenue.id
        amount = ln.line_total - ln.tax_amount
        if amount == 0:
            continue
        lines.append({
            "account_id": account_id,
            "debit": Decimal("0"),
            "credit": amount,
            "description": ln.description,
            "reference": invoice.invoice_number,
        })

    if invoice.tax_amount > 0:
        tax_account = await find_account_by_role(
            db, AccountSubCategory.TAX_PAYABLE, tenant_id=tenant_id, company_id=company_id
        )
        if tax_account is None:
            raise InvoiceAccountError("Tax Payable account not found")
        lines.append({
            "account_id": tax_account.id,
            "debit": Decimal("0"),
            "credit": invoice.tax_amount,
            "description": f"Tax on Invoice {invoice.invoice_number}",
            "reference": invoice.invoice_number,
        })

    entry = await create_and_post_entry(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        entry_date=invoice.invoice_date,
        reference=invoice.invoice_number,
        description=f"Invoice {invoice.invoice_number} - {customer.name}",
        lines=lines,
        created_by=user_id,
    )
    invoice.journal_entry_id = entry.id
    await db.flush()
    logger.info("Invoice %s posted to GL as %s", invoice.invoice_number, entry.entry_number)
    return entry
