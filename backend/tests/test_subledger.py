"""AR / AP subledger: parties, invoices, bills, payments, aging, statements."""

import pytest
import pytest_asyncio
from datetime import date, timedelta
from decimal import Decimal

from conftest import COMPANY, TENANT, d

from ledger.models.subledger import BillStatus, InvoiceStatus, PaymentMethod
from ledger.services.aging_reports import (
    aging_bucket,
    ap_aging_report,
    ar_aging_report,
    customer_statement,
    supplier_statement,
)
from ledger.services.bill_service import (
    BillStateError,
    approve_bill,
    cancel_bill,
    create_bill,
    post_bill_to_gl,
)
from ledger.services.gl.balance_service import get_account_balance
from ledger.services.gl.journal_engine import get_journal_entry
from ledger.services.invoice_service import (
    InvoiceStateError,
    InvoiceValidationError,
    cancel_invoice,
    create_invoice,
    delete_invoice,
    mark_overdue_invoices,
    post_invoice_to_gl,
    send_invoice,
    update_invoice,
)
from ledger.services.party_service import (
    DuplicatePartyError,
    PartyInUseError,
    create_customer,
    create_supplier,
    delete_customer,
    list_customers,
    update_customer,
)
from ledger.services.payment_service import (
    OverpaymentError,
    PaymentStateError,
    post_customer_payment_to_gl,
    post_supplier_payment_to_gl,
    record_customer_payment,
    record_supplier_payment,
)

INVOICE_LINES = [
    {"description": "Widgets", "quantity": 2, "unit_price": "500.00", "tax_rate": 15},
    {"description": "Installation", "quantity": 1, "unit_price": "200.00"},
]


@pytest_asyncio.fixture
async def customer(db, ledger):
    return await create_customer(
        db, tenant_id=TENANT, company_id=COMPANY, name="Acme Ltd", email="ap@acme.test"
    )


@pytest_asyncio.fixture
async def supplier(db, ledger):
    return await create_supplier(
        db, tenant_id=TENANT, company_id=COMPANY, name="Paper Co", payment_terms=14
    )


@pytest_asyncio.fixture
async def sent_invoice(db, ledger, customer):
    invoice = await create_invoice(
        db, tenant_id=TENANT, company_id=COMPANY, customer_id=customer.id,
        invoice_date=d(3, 1), lines=INVOICE_LINES,
    )
    return await send_invoice(db, invoice.id, tenant_id=TENANT)


async def _balance(db, account):
    return await get_account_balance(db, account.id, tenant_id=TENANT, company_id=COMPANY)


class TestParties:

    async def test_code_allocated_and_defaults_applied(self, db, customer):
        assert customer.code.startswith("CUST-")
        assert customer.payment_terms == 30
        assert customer.currency_code == "MUR"
        assert customer.is_active

    async def test_duplicates_rejected(self, db, customer):
        with pytest.raises(DuplicatePartyError, match="name already exists"):
            await create_customer(db, tenant_id=TENANT, company_id=COMPANY, name="Acme Ltd")
        with pytest.raises(DuplicatePartyError, match="email already exists"):
            await create_customer(
                db, tenant_id=TENANT, company_id=COMPANY, name="Other", email="ap@acme.test"
            )

    async def test_update_and_search(self, db, customer):
        await update_customer(db, customer.id, tenant_id=TENANT, phone="555-0100")
        found = await list_customers(db, tenant_id=TENANT, company_id=COMPANY, search="acme")
        assert [c.phone for c in found] == ["555-0100"]

    async def test_invoiced_customer_cannot_be_deleted(self, db, customer, sent_invoice):
        with pytest.raises(PartyInUseError, match="Deactivate instead"):
            await delete_customer(db, customer.id, tenant_id=TENANT)

    async def test_supplier_terms(self, db, supplier):
        assert supplier.code.startswith("SUPP-")
        assert supplier.payment_terms == 14


class TestInvoices:

    async def test_pricing_and_due_date(self, db, customer):
        invoice = await create_invoice(
            db, tenant_id=TENANT, company_id=COMPANY, customer_id=customer.id,
            invoice_date=d(3, 1), lines=INVOICE_LINES,
        )
        assert invoice.invoice_number == "INV-2026-00001"
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.subtotal == Decimal("1200.00")
        assert invoice.tax_amount == Decimal("150.00")
        assert invoice.total_amount == Decimal("1350.00")
        assert invoice.due_date == date(2026, 3, 31)
        assert [ln.line_number for ln in invoice.lines] == [1, 2]

    async def test_lines_required(self, db, customer):
        with pytest.raises(InvoiceValidationError, match="at least one line"):
            await create_invoice(
                db, tenant_id=TENANT, company_id=COMPANY, customer_id=customer.id,
                invoice_date=d(3, 1), lines=[],
            )

    async def test_draft_editing(self, db, customer):
        invoice = await create_invoice(
            db, tenant_id=TENANT, company_id=COMPANY, customer_id=customer.id,
            invoice_date=d(3, 1), lines=INVOICE_LINES,
        )
        updated = await update_invoice(
            db, invoice.id, tenant_id=TENANT, reference="PO-7",
            lines=[{"description": "Consulting", "quantity": 3, "unit_price": 100}],
        )
        assert updated.reference == "PO-7"
        assert updated.total_amount == Decimal("300")
        assert len(updated.lines) == 1

        await send_invoice(db, invoice.id, tenant_id=TENANT)
        with pytest.raises(InvoiceStateError, match="Can only update draft"):
            await update_invoice(db, invoice.id, tenant_id=TENANT, notes="late")
        with pytest.raises(InvoiceStateError, match="Can only delete draft"):
            await delete_invoice(db, invoice.id, tenant_id=TENANT)

    async def test_draft_cannot_be_posted(self, db, customer):
        invoice = await create_invoice(
            db, tenant_id=TENANT, company_id=COMPANY, customer_id=customer.id,
            invoice_date=d(3, 1), lines=INVOICE_LINES,
        )
        with pytest.raises(InvoiceStateError, match="Send it first"):
            await post_invoice_to_gl(db, invoice.id, tenant_id=TENANT)

    async def test_posting_splits_receivable_revenue_and_tax(self, db, ledger, sent_invoice):
        line_two = sent_invoice.lines[1]
        line_two.account_id = ledger["4200"].id
        await db.flush()

        entry = await post_invoice_to_gl(db, sent_invoice.id, tenant_id=TENANT, user_id=2)
        assert sent_invoice.journal_entry_id == entry.id
        assert entry.reference == sent_invoice.invoice_number

        assert await _balance(db, ledger["1130"]) == Decimal("1350")
        assert await _balance(db, ledger["4100"]) == Decimal("-1000")
        assert await _balance(db, ledger["4200"]) == Decimal("-200")
        assert await _balance(db, ledger["2120"]) == Decimal("-150")

        with pytest.raises(InvoiceStateError, match="already posted"):
            await post_invoice_to_gl(db, sent_invoice.id, tenant_id=TENANT)

    async def test_mark_overdue(self, db, sent_invoice):
        assert await mark_overdue_invoices(
            db, tenant_id=TENANT, company_id=COMPANY, as_of=date(2026, 3, 31)
        ) == 0
        assert await mark_overdue_invoices(
            db, tenant_id=TENANT, company_id=COMPANY, as_of=date(2026, 4, 15)
        ) == 1
        await db.refresh(sent_invoice)
        assert sent_invoice.status == InvoiceStatus.OVERDUE


class TestCustomerPayments:

    async def test_partial_then_full(self, db, ledger, sent_invoice):
        first = await record_customer_payment(
            db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
            amount=Decimal("350"), payment_date=d(3, 20), payment_method=PaymentMethod.CASH,
        )
        assert first.payment_number == "PMT-2026-00001"
        assert sent_invoice.status == InvoiceStatus.PARTIAL
        assert sent_invoice.paid_amount == Decimal("350")

        with pytest.raises(OverpaymentError, match="exceeds remaining balance"):
            await record_customer_payment(
                db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
                amount=Decimal("1000.01"), payment_date=d(3, 25),
            )

        await record_customer_payment(
            db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
            amount=Decimal("1000"), payment_date=d(3, 25),
        )
        assert sent_invoice.status == InvoiceStatus.PAID

        with pytest.raises(PaymentStateError, match="already fully paid"):
            await record_customer_payment(
                db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
                amount=Decimal("1"), payment_date=d(3, 26),
            )

    async def test_draft_invoice_not_payable(self, db, customer):
        invoice = await create_invoice(
            db, tenant_id=TENANT, company_id=COMPANY, customer_id=customer.id,
            invoice_date=d(3, 1), lines=INVOICE_LINES,
        )
        with pytest.raises(PaymentStateError, match="draft invoice"):
            await record_customer_payment(
                db, tenant_id=TENANT, company_id=COMPANY, invoice_id=invoice.id,
                amount=Decimal("10"), payment_date=d(3, 2),
            )

    async def test_payment_posting_clears_receivable(self, db, ledger, sent_invoice):
        await post_invoice_to_gl(db, sent_invoice.id, tenant_id=TENANT)
        payment = await record_customer_payment(
            db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
            amount=Decimal("1350"), payment_date=d(4, 2), payment_method=PaymentMethod.CASH,
        )
        entry = await post_customer_payment_to_gl(db, payment.id, tenant_id=TENANT)
        assert payment.journal_entry_id == entry.id
        assert await _balance(db, ledger["1130"]) == Decimal("0")
        assert await _balance(db, ledger["1110"]) == Decimal("1350")

        with pytest.raises(PaymentStateError, match="already posted"):
            await post_customer_payment_to_gl(db, payment.id, tenant_id=TENANT)

    async def test_invoice_with_payments_cannot_be_cancelled(self, db, sent_invoice):
        await record_customer_payment(
            db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
            amount=Decimal("100"), payment_date=d(3, 5),
        )
        with pytest.raises(InvoiceStateError, match="recorded payments"):
            await cancel_invoice(db, sent_invoice.id, tenant_id=TENANT)


class TestBills:

    async def _approved_bill(self, db, supplier):
        bill = await create_bill(
            db, tenant_id=TENANT, company_id=COMPANY, supplier_id=supplier.id,
            bill_date=d(2, 10), supplier_reference="PC-88",
            lines=[{"description": "A4 paper", "quantity": 10, "unit_price": 30, "tax_rate": 15}],
        )
        assert bill.bill_number == "BILL-2026-00001"
        assert bill.due_date == date(2026, 2, 24)
        return await approve_bill(db, bill.id, tenant_id=TENANT, user_id=3)

    async def test_approve_and_post(self, db, ledger, supplier):
        bill = await self._approved_bill(db, supplier)
        assert bill.status == BillStatus.APPROVED
        assert bill.approved_by == 3
        assert bill.total_amount == Decimal("345.00")

        entry = await post_bill_to_gl(db, bill.id, tenant_id=TENANT)
        loaded = await get_journal_entry(db, entry.id, tenant_id=TENANT)
        assert loaded.is_balanced
        assert await _balance(db, ledger["2110"]) == Decimal("-345")
        assert await _balance(db, ledger["6900"]) == Decimal("300")
        assert await _balance(db, ledger["1150"]) == Decimal("45")

    async def test_draft_bill_cannot_be_posted(self, db, ledger, supplier):
        bill = await create_bill(
            db, tenant_id=TENANT, company_id=COMPANY, supplier_id=supplier.id,
            bill_date=d(2, 10), lines=[{"description": "Ink", "quantity": 1, "unit_price": 5}],
        )
        with pytest.raises(BillStateError, match="Approve it first"):
            await post_bill_to_gl(db, bill.id, tenant_id=TENANT)

    async def test_supplier_payment(self, db, ledger, supplier):
        bill = await self._approved_bill(db, supplier)
        await post_bill_to_gl(db, bill.id, tenant_id=TENANT)
        payment = await record_supplier_payment(
            db, tenant_id=TENANT, company_id=COMPANY, bill_id=bill.id,
            amount=Decimal("345"), payment_date=d(2, 20), payment_method=PaymentMethod.CASH,
        )
        assert payment.payment_number == "APPMT-2026-00001"
        assert bill.status == BillStatus.PAID

        await post_supplier_payment_to_gl(db, payment.id, tenant_id=TENANT)
        assert await _balance(db, ledger["2110"]) == Decimal("0")
        assert await _balance(db, ledger["1110"]) == Decimal("-345")

        with pytest.raises(BillStateError, match="Cannot cancel paid bill"):
            await cancel_bill(db, bill.id, tenant_id=TENANT)


class TestAgingAndStatements:

    @pytest.mark.parametrize("days_late,bucket", [
        (-5, "current"), (0, "current"), (1, "1-30"), (30, "1-30"),
        (31, "31-60"), (60, "31-60"), (61, "61-90"), (90, "61-90"), (91, "over_90"),
    ])
    def test_bucket_edges(self, days_late, bucket):
        due = date(2026, 1, 1)
        assert aging_bucket(due, due + timedelta(days=days_late)) == bucket

    async def test_ar_aging(self, db, customer, sent_invoice):
        await record_customer_payment(
            db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
            amount=Decimal("350"), payment_date=d(3, 20),
        )
        report = await ar_aging_report(
            db, tenant_id=TENANT, company_id=COMPANY, as_of_date=date(2026, 5, 15)
        )
        [row] = report["rows"]
        assert row["name"] == "Acme Ltd"
        assert row["31-60"] == Decimal("1000")
        assert row["total"] == Decimal("1000")
        assert report["totals"]["total"] == Decimal("1000")

    async def test_ar_aging_ignores_later_invoices(self, db, sent_invoice):
        report = await ar_aging_report(
            db, tenant_id=TENANT, company_id=COMPANY, as_of_date=date(2026, 2, 1)
        )
        assert report["rows"] == []

    async def test_ap_aging(self, db, ledger, supplier):
        bill = await create_bill(
            db, tenant_id=TENANT, company_id=COMPANY, supplier_id=supplier.id,
            bill_date=d(2, 26), lines=[{"description": "Toner", "quantity": 1, "unit_price": 80}],
        )
        await approve_bill(db, bill.id, tenant_id=TENANT)
        report = await ap_aging_report(
            db, tenant_id=TENANT, company_id=COMPANY, as_of_date=date(2026, 5, 15)
        )
        # due 2026-03-12, 64 days late
        assert report["rows"][0]["61-90"] == Decimal("80")

    async def test_customer_statement(self, db, customer, sent_invoice):
        await record_customer_payment(
            db, tenant_id=TENANT, company_id=COMPANY, invoice_id=sent_invoice.id,
            amount=Decimal("350"), payment_date=d(3, 20),
        )
        full = await customer_statement(
            db, customer.id, tenant_id=TENANT, company_id=COMPANY
        )
        assert [t["type"] for t in full["transactions"]] == ["invoice", "payment"]
        assert full["opening_balance"] == Decimal("0")
        assert full["closing_balance"] == Decimal("1000")

        windowed = await customer_statement(
            db, customer.id, tenant_id=TENANT, company_id=COMPANY, start_date=d(3, 10)
        )
        assert windowed["opening_balance"] == Decimal("1350")
        assert [t["type"] for t in windowed["transactions"]] == ["payment"]
        assert windowed["closing_balance"] == Decimal("1000")

    async def test_supplier_statement_skips_drafts(self, db, ledger, supplier):
        await create_bill(
            db, tenant_id=TENANT, company_id=COMPANY, supplier_id=supplier.id,
            bill_date=d(2, 26), lines=[{"description": "Toner", "quantity": 1, "unit_price": 80}],
        )
        statement = await supplier_statement(
            db, supplier.id, tenant_id=TENANT, company_id=COMPANY
        )
        assert statement["transactions"] == []
        assert statement["closing_balance"] == Decimal("0")
