"""Bank accounts, imported statement lines and reconciliation snapshots."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Numeric,
    Integer,
    Boolean,
    DateTime,
    Date,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledger.database import Base
from ledger.models.gl import _enum


class BankAccountType(str, enum.Enum):
    CURRENT = "current"
    SAVINGS = "savings"
    CREDIT_CARD = "credit_card"
    OTHER = "other"


class ReconciliationStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class BankAccount(Base):
    """A bank account mapped to exactly one cash-type GL account."""

    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "company_id", "account_number", name="uq_bank_accounts_scope_number"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    gl_account_id: Mapped[int] = mapped_column(ForeignKey("gl_accounts.id"), nullable=False)

    account_number: Mapped[str] = mapped_column(String(50), nullable=False)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    bank_name: Mapped[str] = mapped_column(String(200), nullable=False)
    bank_branch: Mapped[str | None] = mapped_column(String(200), nullable=True)
    account_type: Mapped[BankAccountType] = mapped_column(
        _enum(BankAccountType), default=BankAccountType.CURRENT, nullable=False
    )
    currency_code: Mapped[str] = mapped_column(String(3), default="MUR", nullable=False)

    opening_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2), default=Decimal("0"), nullable=False
    )
    last_reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_reconciled_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 2), nullable=True
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class BankReconciliation(Base):
    """Point-in-time reconciliation snapshot for one bank account."""

    __tablename__ = "bank_reconciliations"
    __table_args__ = (
        Index("ix_bank_recon_account", "bank_account_id", "statement_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_account_id: Mapped[int] = mapped_column(ForeignKey("bank_accounts.id"), nullable=False)

    reconciliation_date: Mapped[date] = mapped_column(Date, nullable=False)
    statement_date: Mapped[date] = mapped_column(Date, nullable=False)
    statement_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    gl_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    adjusted_gl_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    difference: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[ReconciliationStatus] = mapped_column(
        _enum(ReconciliationStatus), default=ReconciliationStatus.IN_PROGRESS, nullable=False
    )

    reconciled_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class BankTransaction(Base):
    """One imported statement line.  Reconciled at most once."""

    __tablename__ = "bank_transactions"
    __table_args__ = (
        Index("ix_bank_txn_account_date", "bank_account_id", "transaction_date"),
        Index("ix_bank_txn_batch", "bank_account_id", "import_batch"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    bank_account_id: Mapped[int] = mapped_column(ForeignKey("bank_accounts.id"), nullable=False)

    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    value_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    debit: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    credit: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    running_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    import_batch: Mapped[str] = mapped_column(String(100), nullable=False)

    is_reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reconciliation_id: Mapped[int | None] = mapped_column(
        ForeignKey("bank_reconciliations.id"), nullable=True
    )
    journal_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("gl_journal_entries.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
