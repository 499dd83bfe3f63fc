"""Ledger core: chart of accounts, periods, journals, subledgers, bank, tax.

Revision ID: 001
Revises:
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)
RATE = sa.Numeric(7, 4)
QTY = sa.Numeric(18, 4)
ENUM = sa.String(30)


def _scope() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer, nullable=False),
        sa.Column("company_id", sa.Integer, nullable=False),
    ]


def _created() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _party(table: str) -> None:
    op.create_table(
        table,
        *_scope(),
        sa.Column("code", sa.String(20), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("legal_name", sa.String(200), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(30), nullable=True),
        sa.Column("tax_id", sa.String(50), nullable=True),
        sa.Column("address", sa.Text, nullable=True),
        sa.Column("country", sa.String(60), nullable=True),
        sa.Column("payment_terms", sa.Integer, nullable=False, server_default="30"),
        sa.Column("credit_limit", MONEY, nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="MUR"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created(),
        _updated(),
        sa.UniqueConstraint("tenant_id", "company_id", "code", name=f"uq_{table}_scope_code"),
    )


def _document_lines(table: str, parent_fk: str, parent_table: str) -> None:
    op.create_table(
        table,
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            parent_fk, sa.Integer,
            sa.ForeignKey(f"{parent_table}.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("line_number", sa.Integer, nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("quantity", QTY, nullable=False),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("tax_rate", RATE, nullable=False, server_default="0"),
        sa.Column("tax_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("line_total", MONEY, nullable=False),
        sa.Column("account_id", sa.Integer, sa.ForeignKey("gl_accounts.id"), nullable=True),
    )
    op.create_index(f"ix_{table}_{parent_fk}", table, [parent_fk])


def _payments(table: str, party_fk: str, party_table: str, doc_fk: str, doc_table: str) -> None:
    op.create_table(
        table,
        *_scope(),
        sa.Column(party_fk, sa.Integer, sa.ForeignKey(f"{party_table}.id"), nullable=False),
        sa.Column(doc_fk, sa.Integer, sa.ForeignKey(f"{doc_table}.id"), nullable=False),
        sa.Column("bank_account_id", sa.Integer, sa.ForeignKey("bank_accounts.id"), nullable=True),
        sa.Column("payment_number", sa.String(20), nullable=False),
        sa.Column("payment_date", sa.Date, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("payment_method", ENUM, nullable=False, server_default="bank_transfer"),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column(
            "journal_entry_id", sa.Integer, sa.ForeignKey("gl_journal_entries.id"), nullable=True
        ),
        sa.Column("created_by", sa.Integer, nullable=True),
        _created(),
        sa.UniqueConstraint(
            "tenant_id", "company_id", "payment_number", name=f"uq_{table}_scope_number"
        ),
        sa.CheckConstraint("amount > 0", name=f"ck_{table}_amount_positive"),
    )
    op.create_index(f"ix_{table}_{doc_fk}", table, [doc_fk])


def upgrade() -> None:
    # -- General ledger --------------------------------------------------------

    op.create_table(
        "gl_accounts",
        *_scope(),
        sa.Column("account_code", sa.String(30), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("account_category", ENUM, nullable=False),
        sa.Column("account_type", ENUM, nullable=False),
        sa.Column("sub_category", ENUM, nullable=True),
        sa.Column("balance_bucket", ENUM, nullable=True),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="MUR"),
        sa.Column("parent_id", sa.Integer, sa.ForeignKey("gl_accounts.id"), nullable=True),
        sa.Column("level", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_system_account", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.Integer, nullable=True),
        _created(),
        _updated(),
        sa.UniqueConstraint(
            "tenant_id", "company_id", "account_code", name="uq_gl_accounts_scope_code"
        ),
    )
    op.create_index("ix_gl_accounts_scope", "gl_accounts", ["tenant_id", "company_id"])
    op.create_index("ix_gl_accounts_parent", "gl_accounts", ["parent_id"])
    op.create_index("ix_gl_accounts_sub_category", "gl_accounts", ["sub_category"])

    op.create_table(
        "gl_account_audit",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer, sa.ForeignKey("gl_accounts.id"), nullable=False),
        sa.Column("field_changed", sa.String(100), nullable=False),
        sa.Column("old_value", sa.Text, nullable=True),
        sa.Column("new_value", sa.Text, nullable=True),
        sa.Column("changed_by", sa.Integer, nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_gl_account_audit_account_id", "gl_account_audit", ["account_id"])

    op.create_table(
        "gl_fiscal_periods",
        *_scope(),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("period_type", ENUM, nullable=False),
        sa.Column("fiscal_year", sa.Integer, nullable=False),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("status", ENUM, nullable=False, server_default="open"),
        sa.Column("closed_by", sa.Integer, nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
        sa.CheckConstraint("end_date >= start_date", name="ck_gl_fiscal_periods_period_window"),
    )
    op.create_index(
        "ix_gl_fiscal_periods_scope_dates", "gl_fiscal_periods",
        ["tenant_id", "company_id", "start_date"],
    )
    op.create_index("ix_gl_fiscal_periods_fiscal_year", "gl_fiscal_periods", ["fiscal_year"])

    op.create_table(
        "gl_journal_entries",
        *_scope(),
        sa.Column("entry_number", sa.String(20), nullable=False),
        sa.Column("entry_date", sa.Date, nullable=False),
        sa.Column(
            "fiscal_period_id", sa.Integer, sa.ForeignKey("gl_fiscal_periods.id"), nullable=False
        ),
        sa.Column("entry_type", ENUM, nullable=False, server_default="manual"),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("status", ENUM, nullable=False, server_default="draft"),
        sa.Column("created_by", sa.Integer, nullable=True),
        sa.Column("posted_by", sa.Integer, nullable=True),
        sa.Column("reversed_by", sa.Integer, nullable=True),
        _created(),
        _updated(),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "reversing_entry_id", sa.Integer,
            sa.ForeignKey("gl_journal_entries.id"), nullable=True,
        ),
        sa.Column(
            "reversal_of_id", sa.Integer, sa.ForeignKey("gl_journal_entries.id"), nullable=True
        ),
        sa.UniqueConstraint(
            "tenant_id", "company_id", "entry_number", name="uq_gl_je_scope_number"
        ),
    )
    op.create_index(
        "ix_gl_je_scope_date", "gl_journal_entries", ["tenant_id", "company_id", "entry_date"]
    )
    op.create_index("ix_gl_je_status", "gl_journal_entries", ["status"])
    op.create_index("ix_gl_je_period", "gl_journal_entries", ["fiscal_period_id"])

    op.create_table(
        "gl_journal_lines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "journal_entry_id", sa.Integer,
            sa.ForeignKey("gl_journal_entries.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("line_number", sa.Integer, nullable=False),
        sa.Column("account_id", sa.Integer, sa.ForeignKey("gl_accounts.id"), nullable=False),
        sa.Column("debit", MONEY, nullable=False, server_default="0"),
        sa.Column("credit", MONEY, nullable=False, server_default="0"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.CheckConstraint(
            "(debit = 0 AND credit > 0) OR (debit > 0 AND credit = 0)",
            name="ck_gl_journal_lines_debit_xor_credit",
        ),
    )
    op.create_index("ix_gl_jl_account", "gl_journal_lines", ["account_id"])
    op.create_index("ix_gl_jl_entry", "gl_journal_lines", ["journal_entry_id"])

    op.create_table(
        "document_counters",
        *_scope(),
        sa.Column("scope", sa.String(10), nullable=False),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column("current_value", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "tenant_id", "company_id", "scope", "year", name="uq_document_counters_key"
        ),
    )

    # -- Counterparties and bank accounts --------------------------------------

    _party("ar_customers")
    _party("ap_suppliers")

    op.create_table(
        "bank_accounts",
        *_scope(),
        sa.Column("gl_account_id", sa.Integer, sa.ForeignKey("gl_accounts.id"), nullable=False),
        sa.Column("account_number", sa.String(50), nullable=False),
        sa.Column("account_name", sa.String(200), nullable=False),
        sa.Column("bank_name", sa.String(200), nullable=False),
        sa.Column("bank_branch", sa.String(200), nullable=True),
        sa.Column("account_type", ENUM, nullable=False, server_default="current"),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="MUR"),
        sa.Column("opening_balance", MONEY, nullable=False, server_default="0"),
        sa.Column("current_balance", MONEY, nullable=False, server_default="0"),
        sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reconciled_balance", MONEY, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created(),
        _updated(),
        sa.UniqueConstraint(
            "tenant_id", "company_id", "account_number", name="uq_bank_accounts_scope_number"
        ),
    )

    # -- Accounts receivable / payable -----------------------------------------

    op.create_table(
        "ar_invoices",
        *_scope(),
        sa.Column("customer_id", sa.Integer, sa.ForeignKey("ar_customers.id"), nullable=False),
        sa.Column("invoice_number", sa.String(20), nullable=False),
        sa.Column("invoice_date", sa.Date, nullable=False),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("subtotal", MONEY, nullable=False, server_default="0"),
        sa.Column("tax_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("total_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("paid_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="MUR"),
        sa.Column("status", ENUM, nullable=False, server_default="draft"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column(
            "journal_entry_id", sa.Integer, sa.ForeignKey("gl_journal_entries.id"), nullable=True
        ),
        sa.Column("created_by", sa.Integer, nullable=True),
        _created(),
        _updated(),
        sa.UniqueConstraint(
            "tenant_id", "company_id", "invoice_number", name="uq_ar_invoices_scope_number"
        ),
        sa.CheckConstraint("paid_amount >= 0", name="ck_ar_invoices_paid_non_negative"),
    )
    op.create_index("ix_ar_invoices_customer", "ar_invoices", ["customer_id"])
    op.create_index("ix_ar_invoices_status_due", "ar_invoices", ["status", "due_date"])
    _document_lines("ar_invoice_lines", "invoice_id", "ar_invoices")
    _payments("ar_payments", "customer_id", "ar_customers", "invoice_id", "ar_invoices")

    op.create_table(
        "ap_bills",
        *_scope(),
        sa.Column("supplier_id", sa.Integer, sa.ForeignKey("ap_suppliers.id"), nullable=False),
        sa.Column("bill_number", sa.String(20), nullable=False),
        sa.Column("supplier_reference", sa.String(100), nullable=True),
        sa.Column("bill_date", sa.Date, nullable=False),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("subtotal", MONEY, nullable=False, server_default="0"),
        sa.Column("tax_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("total_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("paid_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("currency_code", sa.String(3), nullable=False, server_default="MUR"),
        sa.Column("status", ENUM, nullable=False, server_default="draft"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column(
            "journal_entry_id", sa.Integer, sa.ForeignKey("gl_journal_entries.id"), nullable=True
        ),
        sa.Column("approved_by", sa.Integer, nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Integer, nullable=True),
        _created(),
        _updated(),
        sa.UniqueConstraint(
            "tenant_id", "company_id", "bill_number", name="uq_ap_bills_scope_number"
        ),
        sa.CheckConstraint("paid_amount >= 0", name="ck_ap_bills_paid_non_negative"),
    )
    op.create_index("ix_ap_bills_supplier", "ap_bills", ["supplier_id"])
    op.create_index("ix_ap_bills_status_due", "ap_bills", ["status", "due_date"])
    _document_lines("ap_bill_lines", "bill_id", "ap_bills")
    _payments("ap_payments", "supplier_id", "ap_suppliers", "bill_id", "ap_bills")

    # -- Bank reconciliation ---------------------------------------------------

    op.create_table(
        "bank_reconciliations",
        *_scope(),
        sa.Column("bank_account_id", sa.Integer, sa.ForeignKey("bank_accounts.id"), nullable=False),
        sa.Column("reconciliation_date", sa.Date, nullable=False),
        sa.Column("statement_date", sa.Date, nullable=False),
        sa.Column("statement_balance", MONEY, nullable=False),
        sa.Column("gl_balance", MONEY, nullable=False),
        sa.Column("adjusted_gl_balance", MONEY, nullable=False),
        sa.Column("difference", MONEY, nullable=False),
        sa.Column("status", ENUM, nullable=False, server_default="in_progress"),
        sa.Column("reconciled_by", sa.Integer, nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        _created(),
    )
    op.create_index(
        "ix_bank_recon_account", "bank_reconciliations", ["bank_account_id", "statement_date"]
    )

    op.create_table(
        "bank_transactions",
        *_scope(),
        sa.Column("bank_account_id", sa.Integer, sa.ForeignKey("bank_accounts.id"), nullable=False),
        sa.Column("transaction_date", sa.Date, nullable=False),
        sa.Column("value_date", sa.Date, nullable=True),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("debit", MONEY, nullable=False, server_default="0"),
        sa.Column("credit", MONEY, nullable=False, server_default="0"),
        sa.Column("running_balance", MONEY, nullable=True),
        sa.Column("import_batch", sa.String(100), nullable=False),
        sa.Column("is_reconciled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "reconciliation_id", sa.Integer,
            sa.ForeignKey("bank_reconciliations.id"), nullable=True,
        ),
        sa.Column(
            "journal_entry_id", sa.Integer, sa.ForeignKey("gl_journal_entries.id"), nullable=True
        ),
        _created(),
    )
    op.create_index(
        "ix_bank_txn_account_date", "bank_transactions", ["bank_account_id", "transaction_date"]
    )
    op.create_index("ix_bank_txn_batch", "bank_transactions", ["bank_account_id", "import_batch"])

    # -- Tax -------------------------------------------------------------------

    op.create_table(
        "tax_rates",
        *_scope(),
        sa.Column("code", sa.String(20), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("rate", RATE, nullable=False),
        sa.Column("tax_type", ENUM, nullable=False),
        sa.Column("effective_from", sa.Date, nullable=False),
        sa.Column("effective_to", sa.Date, nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("tax_account_id", sa.Integer, sa.ForeignKey("gl_accounts.id"), nullable=True),
        sa.Column("is_default", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created(),
        sa.UniqueConstraint("tenant_id", "company_id", "code", name="uq_tax_rates_scope_code"),
    )

    op.create_table(
        "tax_transactions",
        *_scope(),
        sa.Column("tax_rate_id", sa.Integer, sa.ForeignKey("tax_rates.id"), nullable=False),
        sa.Column("transaction_date", sa.Date, nullable=False),
        sa.Column("transaction_type", ENUM, nullable=False),
        sa.Column("reference_type", sa.String(30), nullable=True),
        sa.Column("reference_id", sa.Integer, nullable=True),
        sa.Column("reference_number", sa.String(30), nullable=True),
        sa.Column("base_amount", MONEY, nullable=False),
        sa.Column("tax_rate", RATE, nullable=False),
        sa.Column("tax_amount", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("is_reversed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        _created(),
    )


def downgrade() -> None:
    for table in [
        "tax_transactions", "tax_rates",
        "bank_transactions", "bank_reconciliations",
        "ap_payments", "ap_bill_lines", "ap_bills",
        "ar_payments", "ar_invoice_lines", "ar_invoices",
        "bank_accounts", "ap_suppliers", "ar_customers",
        "document_counters", "gl_journal_lines", "gl_journal_entries",
        "gl_fiscal_periods", "gl_account_audit", "gl_accounts",
    ]:
        op.drop_table(table)
