"""AR / AP aging and party statements.

Aging buckets are keyed on days past the due date as of the report date:
``current`` (not yet due), ``1-30``, ``31-60``, ``61-90`` and ``over_90``.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.errors import NotFoundError
from ledger.models.subledger import (
    Bill,
    BillStatus,
    Customer,
    CustomerPayment,
    Invoice,
    InvoiceStatus,
    Supplier,
    SupplierPayment,
)

logger = logging.getLogger(__name__)

BUCKETS = ("current", "1-30", "31-60", "61-90", "over_90")

_OPEN_INVOICE = (InvoiceStatus.SENT, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE)
_OPEN_BILL = (BillStatus.APPROVED, BillStatus.PARTIAL, BillStatus.OVERDUE)


def aging_bucket(due_date: date, as_of: date) -> str:
    days = (as_of - due_date).days
    if days <= 0:
        return "current"
    if days <= 30:
        return "1-30"
    if days <= 60:
        return "31-60"
    if days <= 90:
        return "61-90"
    return "over_90"


def _empty_totals() -> dict:
    totals = {b: Decimal("0") for b in BUCKETS}
    totals["total"] = Decimal("0")
    return totals


def _age(docs, parties: dict, as_of: date, party_attr: str) -> dict:
    rows: dict[int, dict] = {}
    for doc in docs:
        balance = doc.total_amount - doc.paid_amount
        if balance <= 0:
            continue
        party_id = getattr(doc, party_attr)
        row = rows.get(party_id)
        if row is None:
            party = parties[party_id]
            row = {"party_id": party_id, "code": party.code, "name": party.name}
            row.update(_empty_totals())
            rows[party_id] = row
        row[aging_bucket(doc.due_date, as_of)] += balance
        row["total"] += balance

    ordered = sorted(rows.values(), key=lambda r: r["total"], reverse=True)
    totals = _empty_totals()
    for row in ordered:
        for key in totals:
            totals[key] += row[key]
    return {"as_of_date": as_of, "rows": ordered, "totals": totals}


async def ar_aging_report(
    db: AsyncSession, *, tenant_id: int, company_id: int, as_of_date: date | None = None
) -> dict:
    as_of = as_of_date or date.today()
    result = await db.execute(
        select(Invoice, Customer)
        .join(Customer, Invoice.customer_id == Customer.id)
        .where(
            Invoice.tenant_id == tenant_id,
            Invoice.company_id == company_id,
            Invoice.status.in_(_OPEN_INVOICE),
            Invoice.invoice_date <= as_of,
        )
        .order_by(Invoice.due_date)
    )
    pairs = result.all()
    return _age(
        [inv for inv, _ in pairs], {c.id: c for _, c in pairs}, as_of, "customer_id"
    )


async def ap_aging_report(
    db: AsyncSession, *, tenant_id: int, company_id: int, as_of_date: date | None = None
) -> dict:
    as_of = as_of_date or date.today()
    result = await db.execute(
        select(Bill, Supplier)
        .join(Supplier, Bill.supplier_id == Supplier.id)
        .where(
            Bill.tenant_id == tenant_id,
            Bill.company_id == company_id,
            Bill.status.in_(_OPEN_BILL),
            Bill.bill_date <= as_of,
        )
        .order_by(Bill.due_date)
    )
    pairs = result.all()
    return _age(
        [bill for bill, _ in pairs], {s.id: s for _, s in pairs}, as_of, "supplier_id"
    )


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def _statement(party, docs, payments, *, doc_type, number_attr, date_attr, start_date):
    """Merge documents (increase) and payments (decrease) into a running statement."""
    opening = Decimal("0")
    events = []
    for doc in docs:
        doc_date = getattr(doc, date_attr)
        number = getattr(doc, number_attr)
        if start_date and doc_date < start_date:
            opening += doc.total_amount
            continue
        events.append((doc_date, 0, {
            "date": doc_date,
            "type": doc_type,
            "reference": number,
            "description": doc.description or f"{doc_type.capitalize()} {number}",
            "debit": doc.total_amount,
            "credit": Decimal("0"),
        }))
    for pmt in payments:
        if start_date and pmt.payment_date < start_date:
            opening -= pmt.amount
            continue
        events.append((pmt.payment_date, 1, {
            "date": pmt.payment_date,
            "type": "payment",
            "reference": pmt.payment_number,
            "description": f"Payment - {pmt.payment_method.value}",
            "debit": Decimal("0"),
            "credit": pmt.amount,
        }))

    running = opening
    transactions = []
    for _, _, txn in sorted(events, key=lambda e: (e[0], e[1])):
        running += txn["debit"] - txn["credit"]
        txn["balance"] = running
        transactions.append(txn)
    return {
        "party": party,
        "opening_balance": opening,
        "closing_balance": running,
        "transactions": transactions,
    }


async def customer_statement(
    db: AsyncSession,
    customer_id: int,
    *,
    tenant_id: int,
    company_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    customer = (
        await db.execute(
            select(Customer).where(
                Customer.id == customer_id,
                Customer.tenant_id == tenant_id,
                Customer.company_id == company_id,
            )
        )
    ).scalar_one_or_none()
    if customer is None:
        raise NotFoundError("Customer not found")

    inv_q = select(Invoice).where(
        Invoice.customer_id == customer_id,
        Invoice.status.notin_([InvoiceStatus.DRAFT, InvoiceStatus.CANCELLED]),
    )
    pmt_q = select(CustomerPayment).where(CustomerPayment.customer_id == customer_id)
    if end_date:
        inv_q = inv_q.where(Invoice.invoice_date <= end_date)
        pmt_q = pmt_q.where(CustomerPayment.payment_date <= end_date)

    invoices = (await db.execute(inv_q)).scalars().all()
    payments = (await db.execute(pmt_q)).scalars().all()
    return _statement(
        customer, invoices, payments,
        doc_type="invoice", number_attr="invoice_number", date_attr="invoice_date",
        start_date=start_date,
    )


async def supplier_statement(
    db: AsyncSession,
    supplier_id: int,
    *,
    tenant_id: int,
    company_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
) -> dict:
    supplier = (
        await db.execute(
            select(Supplier).where(
                Supplier.id == supplier_id,
                Supplier.tenant_id == tenant_id,
                Supplier.company_id == company_id,
            )
        )
    ).scalar_one_or_none()
    if supplier is None:
        raise NotFoundError("Supplier not found")

    bill_q = select(Bill).where(
        Bill.supplier_id == supplier_id,
        Bill.status.notin_([BillStatus.DRAFT, BillStatus.CANCELLED]),
    )
    pmt_q = select(SupplierPayment).where(SupplierPayment.supplier_id == supplier_id)
    if end_date:
        bill_q = bill_q.where(Bill.bill_date <= end_date)
        pmt_q = pmt_q.where(SupplierPayment.payment_date <= end_date)

    bills = (await db.execute(bill_q)).scalars().all()
    payments = (await db.execute(pmt_q)).scalars().all()
    return _statement(
        supplier, bills, payments,
        doc_type="bill", number_attr="bill_number", date_attr="bill_date",
        start_date=start_date,
    )
