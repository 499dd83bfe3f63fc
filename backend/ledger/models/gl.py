"""General Ledger models.

Implements a multi-tenant double-entry bookkeeping core with:
- Hierarchical Chart of Accounts scoped per tenant/company
- Explicit posting roles and balance-sheet buckets on accounts
- Fiscal periods (year / quarter / month) gating postings
- Journal entries that are immutable once posted (corrections via reversal)
- Counter rows backing human-readable document numbers
"""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Boolean,
    Enum,
    DateTime,
    Date,
    ForeignKey,
    Text,
    Index,
    CheckConstraint,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger.database import Base

BALANCE_TOLERANCE = Decimal("0.01")


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    """Persist enum *values* (lowercase) as VARCHAR with a CHECK constraint."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=30,
    )


# ===================================================================
# Enumerations
# ===================================================================


class AccountCategory(str, enum.Enum):
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"


class AccountType(str, enum.Enum):
    """Normal balance side."""
    DEBIT = "debit"
    CREDIT = "credit"


NORMAL_BALANCE = {
    AccountCategory.ASSET: AccountType.DEBIT,
    AccountCategory.EXPENSE: AccountType.DEBIT,
    AccountCategory.LIABILITY: AccountType.CREDIT,
    AccountCategory.EQUITY: AccountType.CREDIT,
    AccountCategory.REVENUE: AccountType.CREDIT,
}


class AccountSubCategory(str, enum.Enum):
    """Posting role of an account.  Subledger posting resolves targets by role."""
    HEADER = "header"
    CASH = "cash"
    BANK = "bank"
    ACCOUNTS_RECEIVABLE = "accounts_receivable"
    INVENTORY = "inventory"
    TAX_RECEIVABLE = "tax_receivable"
    FIXED_ASSET = "fixed_asset"
    ACCUMULATED_DEPRECIATION = "accumulated_depreciation"
    ACCOUNTS_PAYABLE = "accounts_payable"
    TAX_PAYABLE = "tax_payable"
    PAYROLL = "payroll"
    LOAN = "loan"
    SHARE_CAPITAL = "share_capital"
    RETAINED_EARNINGS = "retained_earnings"
    CURRENT_EARNINGS = "current_earnings"
    SALES = "sales"
    SERVICE = "service"
    OTHER_INCOME = "other_income"
    COST_OF_SALES = "cost_of_sales"
    OPERATING_EXPENSES = "operating_expenses"
    OTHER = "other"


class BalanceBucket(str, enum.Enum):
    CURRENT = "current"
    NON_CURRENT = "non_current"


class PeriodType(str, enum.Enum):
    YEAR = "year"
    QUARTER = "quarter"
    MONTH = "month"


class PeriodStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    LOCKED = "locked"


class JournalEntryStatus(str, enum.Enum):
    DRAFT = "draft"
    POSTED = "posted"
    REVERSED = "reversed"


class JournalEntryType(str, enum.Enum):
    MANUAL = "manual"
    SYSTEM = "system"
    ADJUSTMENT = "adjustment"
    CLOSING = "closing"


# A reversed entry stays effective; its mirror cancels it out.
POSTED_STATUSES = (JournalEntryStatus.POSTED, JournalEntryStatus.REVERSED)


# ===================================================================
# Chart of Accounts
# ===================================================================


class Account(Base):
    """Chart of Accounts entry, tenant/company scoped, hierarchical by parent_id."""

    __tablename__ = "gl_accounts"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "company_id", "account_code", name="uq_gl_accounts_scope_code"
        ),
        Index("ix_gl_accounts_scope", "tenant_id", "company_id"),
        Index("ix_gl_accounts_parent", "parent_id"),
        Index("ix_gl_accounts_sub_category", "sub_category"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)

    account_code: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    account_category: Mapped[AccountCategory] = mapped_column(
        _enum(AccountCategory), nullable=False
    )
    account_type: Mapped[AccountType] = mapped_column(
        _enum(AccountType), nullable=False
    )
    sub_category: Mapped[AccountSubCategory | None] = mapped_column(
        _enum(AccountSubCategory), nullable=True
    )
    balance_bucket: Mapped[BalanceBucket | None] = mapped_column(
        _enum(BalanceBucket), nullable=True
    )
    currency_code: Mapped[str] = mapped_column(String(3), default="MUR", nullable=False)

    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_accounts.id"), nullable=True
    )
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system_account: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AccountAudit(Base):
    """Append-only audit trail for Chart of Accounts modifications."""

    __tablename__ = "gl_account_audit"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("gl_accounts.id"), nullable=False, index=True
    )
    field_changed: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


# ===================================================================
# Fiscal periods
# ===================================================================


class FiscalPeriod(Base):
    """Named date window (inclusive on both ends) gating postings."""

    __tablename__ = "gl_fiscal_periods"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="period_window"),
        Index("ix_gl_fiscal_periods_scope_dates", "tenant_id", "company_id", "start_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(50), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(_enum(PeriodType), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[PeriodStatus] = mapped_column(
        _enum(PeriodStatus), default=PeriodStatus.OPEN, nullable=False
    )

    closed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def contains(self, on: date) -> bool:
        return self.start_date <= on <= self.end_date


# ===================================================================
# Journal entries
# ===================================================================


class JournalEntry(Base):
    """Double-entry journal entry header.

    Once posted, entries cannot be modified; corrections are made via
    reversing entries only.  Reversal linkage is id + id
    (``reversing_entry_id`` on the original, ``reversal_of_id`` on the mirror).
    """

    __tablename__ = "gl_journal_entries"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "company_id", "entry_number", name="uq_gl_je_scope_number"
        ),
        Index("ix_gl_je_scope_date", "tenant_id", "company_id", "entry_date"),
        Index("ix_gl_je_status", "status"),
        Index("ix_gl_je_period", "fiscal_period_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)

    entry_number: Mapped[str] = mapped_column(String(20), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    fiscal_period_id: Mapped[int] = mapped_column(
        ForeignKey("gl_fiscal_periods.id"), nullable=False
    )
    entry_type: Mapped[JournalEntryType] = mapped_column(
        _enum(JournalEntryType), default=JournalEntryType.MANUAL, nullable=False
    )
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[JournalEntryStatus] = mapped_column(
        _enum(JournalEntryStatus), default=JournalEntryStatus.DRAFT, nullable=False
    )

    # User tracking
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    posted_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reversed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reversed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Reversal linkage
    reversing_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    reversal_of_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )

    lines = relationship(
        "JournalLine",
        cascade="all, delete-orphan",
        order_by="JournalLine.line_number",
    )

    @property
    def total_debits(self) -> Decimal:
        return sum((ln.debit or Decimal("0")) for ln in self.lines)

    @property
    def total_credits(self) -> Decimal:
        return sum((ln.credit or Decimal("0")) for ln in self.lines)

    @property
    def is_balanced(self) -> bool:
        return abs(self.total_debits - self.total_credits) < BALANCE_TOLERANCE


class JournalLine(Base):
    """Individual debit or credit line within a journal entry."""

    __tablename__ = "gl_journal_lines"
    __table_args__ = (
        CheckConstraint(
            "(debit = 0 AND credit > 0) OR (debit > 0 AND credit = 0)",
            name="debit_xor_credit",
        ),
        Index("ix_gl_jl_account", "account_id"),
        Index("ix_gl_jl_entry", "journal_entry_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    journal_entry_id: Mapped[int] = mapped_column(
        ForeignKey("gl_journal_entries.id", ondelete="CASCADE"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("gl_accounts.id"), nullable=False
    )

    debit: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0.00"), nullable=False
    )
    credit: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0.00"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)


# ===================================================================
# Document numbering
# ===================================================================


class DocumentCounter(Base):
    """Counter row per (tenant, company, scope, year).  Locked on increment."""

    __tablename__ = "document_counters"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "company_id", "scope", "year", name="uq_document_counters_key"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    scope: Mapped[str] = mapped_column(String(10), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
