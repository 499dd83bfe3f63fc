"""Customer receipts (AR) and supplier payments (AP).

Recording a payment and posting it to the GL are separate steps.
Recording bumps the parent document's ``paid_amount`` with a single guarded
``UPDATE`` so concurrent payments can never over-pay a document:

    UPDATE ar_invoices
       SET paid_amount = paid_amount + :amount
     WHERE id = :id AND total_amount - paid_amount > :amount - 0.01

Posting:

    customer payment:  Dr Cash/Bank   Cr Accounts Receivable
    supplier payment:  Dr Accounts Payable   Cr Cash/Bank
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.errors import (
    BusinessRuleViolationError,
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationFailedError,
)
from ledger.models.gl import BALANCE_TOLERANCE, AccountSubCategory, JournalEntry
from ledger.models.subledger import (
    Bill,
    BillStatus,
    Customer,
    CustomerPayment,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    Supplier,
    SupplierPayment,
)
from ledger.services import sequence
from ledger.services.bank_account_service import adjust_bank_balance, require_bank_account
from ledger.services.gl.coa_service import find_account_by_role
from ledger.services.gl.journal_engine import create_and_post_entry

logger = logging.getLogger(__name__)


class PaymentError(LedgerError):
    """Payment error."""


class PaymentNotFoundError(PaymentError, NotFoundError):
    pass


class PaymentValidationError(PaymentError, ValidationFailedError):
    pass


class PaymentStateError(PaymentError, StateConflictError):
    pass


class OverpaymentError(PaymentError, BusinessRuleViolationError):
    pass


class PaymentAccountError(PaymentError, ReferentialIntegrityError):
    pass


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _check_payable(doc, label: str, amount: Decimal, *, paid_status, blocked) -> None:
    if doc.status in blocked:
        raise PaymentStateError(f"Cannot record payment for {doc.status.value} {label}")
    if doc.status == paid_status:
        raise PaymentStateError(f"{label.capitalize()} is already fully paid")
    remaining = doc.total_amount - doc.paid_amount
    if amount > remaining:
        raise OverpaymentError(
            f"Payment amount ({amount}) exceeds remaining balance ({remaining})"
        )
    if amount <= 0:
        raise PaymentValidationError("Payment amount must be greater than zero")


async def _apply_payment(
    db: AsyncSession, doc, amount: Decimal, *, paid_status, partial_status
) -> None:
    """Atomically add *amount* to ``doc.paid_amount`` and restate its status."""
    model = type(doc)
    result = await db.execute(
        update(model)
        .where(
            model.id == doc.id,
            model.total_amount - model.paid_amount > amount - BALANCE_TOLERANCE,
        )
        .values(paid_amount=model.paid_amount + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.refresh(doc, ["paid_amount"])
        raise OverpaymentError(
            f"Payment amount ({amount}) exceeds remaining balance "
            f"({doc.total_amount - doc.paid_amount})"
        )

    await db.refresh(doc, ["paid_amount"])
    if abs(doc.paid_amount - doc.total_amount) < BALANCE_TOLERANCE:
        doc.status = paid_status
    else:
        doc.status = partial_status
    await db.flush()


async def _cash_account_id(
    db: AsyncSession, bank_account_id: int | None, *, tenant_id: int, company_id: int
) -> int:
    if bank_account_id:
        bank_account = await require_bank_account(db, bank_account_id, tenant_id=tenant_id)
        return bank_account.gl_account_id
    cash = await find_account_by_role(
        db, AccountSubCategory.CASH, tenant_id=tenant_id, company_id=company_id
    )
    if cash is None:
        raise PaymentAccountError("Cash account not found")
    return cash.id


# ---------------------------------------------------------------------------
# Customer payments
# ---------------------------------------------------------------------------

async def record_customer_payment(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    invoice_id: int,
    amount: Decimal,
    payment_date: date,
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
    bank_account_id: int | None = None,
    reference: str | None = None,
    notes: str | None = None,
    created_by: int | None = None,
) -> CustomerPayment:
    """Record a receipt against an invoice (not yet posted to the GL)."""
    amount = Decimal(str(amount))
    result = await db.execute(
        select(Invoice).where(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id,
            Invoice.company_id == company_id,
        )
    )
    invoice = result.scalar_one_or_none()
    if invoice is None:
        raise PaymentNotFoundError("Invoice not found")

    _check_payable(
        invoice,
        "invoice",
        amount,
        paid_status=InvoiceStatus.PAID,
        blocked=(InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED),
    )
    if bank_account_id:
        await require_bank_account(db, bank_account_id, tenant_id=tenant_id)

    payment_number = await sequence.next_document_number(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        prefix=sequence.CUSTOMER_PAYMENT,
        on_date=payment_date,
    )
    payment = CustomerPayment(
        tenant_id=tenant_id,
        company_id=company_id,
        customer_id=invoice.customer_id,
        invoice_id=invoice.id,
        bank_account_id=bank_account_id,
        payment_number=payment_number,
        payment_date=payment_date,
        amount=amount,
        payment_method=payment_method,
        reference=reference,
        notes=notes,
        created_by=created_by,
    )
    db.add(payment)
    await db.flush()

    await _apply_payment(
        db,
        invoice,
        amount,
        paid_status=InvoiceStatus.PAID,
        partial_status=InvoiceStatus.PARTIAL,
    )
    await db.refresh(payment)
    logger.info(
        "Recorded payment %s for invoice %s: %s",
        payment_number, invoice.invoice_number, amount,
    )
    return payment


async def get_customer_payment(
    db: AsyncSession, payment_id: int, *, tenant_id: int
) -> CustomerPayment | None:
    result = await db.execute(
        select(CustomerPayment).where(
            CustomerPayment.id == payment_id, CustomerPayment.tenant_id == tenant_id
        )
    )
    return result.scalar_one_or_none()


async def list_customer_payments(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    customer_id: int | None = None,
    invoice_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[CustomerPayment]:
    q = (
        select(CustomerPayment)
        .where(CustomerPayment.tenant_id == tenant_id, CustomerPayment.company_id == company_id)
        .order_by(CustomerPayment.payment_date.desc(), CustomerPayment.payment_number.desc())
    )
    if customer_id:
        q = q.where(CustomerPayment.customer_id == customer_id)
    if invoice_id:
        q = q.where(CustomerPayment.invoice_id == invoice_id)
    if start_date:
        q = q.where(CustomerPayment.payment_date >= start_date)
    if end_date:
        q = q.where(CustomerPayment.payment_date <= end_date)
    result = await db.execute(q)
    return list(result.scalars().all())


async def post_customer_payment_to_gl(
    db: AsyncSession, payment_id: int, *, tenant_id: int, user_id: int | None = None
) -> JournalEntry:
    payment = await get_customer_payment(db, payment_id, tenant_id=tenant_id)
    if payment is None:
        raise PaymentNotFoundError("Payment not found")
    if payment.journal_entry_id:
        raise PaymentStateError("Payment already posted to GL")

    company_id = payment.company_id
    customer = (
        await db.execute(select(Customer).where(Customer.id == payment.customer_id))
    ).scalar_one()
    cash_id = await _cash_account_id(
        db, payment.bank_account_id, tenant_id=tenant_id, company_id=company_id
    )
    ar_account = await find_account_by_role(
        db, AccountSubCategory.ACCOUNTS_RECEIVABLE, tenant_id=tenant_id, company_id=company_id
    )
    if ar_account is None:
        raise PaymentAccountError("Accounts Receivable account not found")

    entry = await create_and_post_entry(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        entry_date=payment.payment_date,
        reference=payment.payment_number,
        description=f"Payment {payment.payment_number} from {customer.name}",
        lines=[
            {
                "account_id": cash_id,
                "debit": payment.amount,
                "credit": Decimal("0"),
                "description": f"Payment received - {payment.payment_method.value}",
                "reference": payment.reference or payment.payment_number,
            },
            {
                "account_id": ar_account.id,
                "debit": Decimal("0"),
                "credit": payment.amount,
                "description": f"Payment from {customer.name}",
                "reference": payment.payment_number,
            },
        ],
        created_by=user_id,
    )
    payment.journal_entry_id = entry.id
    if payment.bank_account_id:
        await adjust_bank_balance(
            db, payment.bank_account_id, payment.amount, tenant_id=tenant_id, is_debit=True
        )
    await db.flush()
    logger.info("Payment %s posted to GL as %s", payment.payment_number, entry.entry_number)
    return entry


# ---------------------------------------------------------------------------
# Supplier payments
# ---------------------------------------------------------------------------

async def record_supplier_payment(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    bill_id: int,
    amount: Decimal,
    payment_date: date,
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
    bank_account_id: int | None = None,
    reference: str | None = None,
    notes: str | None = None,
    created_by: int | None = None,
) -> SupplierPayment:
    """Record a payment against a bill (not yet posted to the GL)."""
    amount = Decimal(str(amount))
    result = await db.execute(
        select(Bill).where(
            Bill.id == bill_id,
            Bill.tenant_id == tenant_id,
            Bill.company_id == company_id,
        )
    )
    bill = result.scalar_one_or_none()
    if bill is None:
        raise PaymentNotFoundError("Bill not found")

    _check_payable(
        bill,
        "bill",
        amount,
        paid_status=BillStatus.PAID,
        blocked=(BillStatus.DRAFT, BillStatus.CANCELLED),
    )
    if bank_account_id:
        await require_bank_account(db, bank_account_id, tenant_id=tenant_id)

    payment_number = await sequence.next_document_number(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        prefix=sequence.SUPPLIER_PAYMENT,
        on_date=payment_date,
    )
    payment = SupplierPayment(
        tenant_id=tenant_id,
        company_id=company_id,
        supplier_id=bill.supplier_id,
        bill_id=bill.id,
        bank_account_id=bank_account_id,
        payment_number=payment_number,
        payment_date=payment_date,
        amount=amount,
        payment_method=payment_method,
        reference=reference,
        notes=notes,
        created_by=created_by,
    )
    db.add(payment)
    await db.flush()

    await _apply_payment(
        db,
        bill,
        amount,
        paid_status=BillStatus.PAID,
        partial_status=BillStatus.PARTIAL,
    )
    await db.refresh(payment)
    logger.info(
        "Recorded payment %s for bill %s: %s", payment_number, bill.bill_number, amount
    )
    return payment


async def get_supplier_payment(
    db: AsyncSession, payment_id: int, *, tenant_id: int
) -> SupplierPayment | None:
    result = await db.execute(
        select(SupplierPayment).where(
            SupplierPayment.id == payment_id, SupplierPayment.tenant_id == tenant_id
        )
    )
    return result.scalar_one_or_none()


async def list_supplier_payments(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    supplier_id: int | None = None,
    bill_id: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list[SupplierPayment]:
    q = (
        select(SupplierPayment)
        .where(SupplierPayment.tenant_id == tenant_id, SupplierPayment.company_id == company_id)
        .order_by(SupplierPayment.payment_date.desc(), SupplierPayment.payment_number.desc())
    )
    if supplier_id:
        q = q.where(SupplierPayment.supplier_id == supplier_id)
    if bill_id:
        q = q.where(SupplierPayment.bill_id == bill_id)
    if start_date:
        q = q.where(SupplierPayment.payment_date >= start_date)
    if end_date:
        q = q.where(SupplierPayment.payment_date <= end_date)
    result = await db.execute(q)
    return list(result.scalars().all())


async def post_supplier_payment_to_gl(
    db: AsyncSession, payment_id: int, *, tenant_id: int, user_id: int | None = None
) -> JournalEntry:
    payment = await get_supplier_payment(db, payment_id, tenant_id=tenant_id)
    if payment is None:
        raise PaymentNotFoundError("Payment not found")
    if payment.journal_entry_id:
        raise PaymentStateError("Payment already posted to GL")

    company_id = payment.company_id
    supplier = (
        await db.execute(select(Supplier).where(Supplier.id == payment.supplier_id))
    ).scalar_one()
    cash_id = await _cash_account_id(
        db, payment.bank_account_id, tenant_id=tenant_id, company_id=company_id
    )
    ap_account = await find_account_by_role(
        db, AccountSubCategory.ACCOUNTS_PAYABLE, tenant_id=tenant_id, company_id=company_id
    )
    if ap_account is None:
        raise PaymentAccountError("Accounts Payable account not found")

    entry = await create_and_post_entry(
        db,
        tenant_id=tenant_id,
        company_id=company_id,
        entry_date=payment.payment_date,
        reference=payment.payment_number,
        description=f"Payment {payment.payment_number} to {supplier.name}",
        lines=[
            {
                "account_id": ap_account.id,
                "debit": payment.amount,
                "credit": Decimal("0"),
                "description": f"Payment to {supplier.name}",
                "reference": payment.payment_number,
            },
            {
                "account_id": cash_id,
                "debit": Decimal("0"),
                "credit": payment.amount,
                "description": f"Payment made - {payment.payment_method.value}",
                "reference": payment.reference or payment.payment_number,
            },
        ],
        created_by=user_id,
    )
    payment.journal_entry_id = entry.id
    if payment.bank_account_id:
        await adjust_bank_balance(
            db, payment.bank_account_id, payment.amount, tenant_id=tenant_id, is_debit=False
        )
    await db.flush()
    logger.info("Payment %s posted to GL as %s", payment.payment_number, entry.entry_number)
    return entry
