"""SQLAlchemy models for the ledger core."""

from ledger.models.gl import (
    Account,
    AccountAudit,
    AccountCategory,
    AccountSubCategory,
    AccountType,
    BalanceBucket,
    DocumentCounter,
    FiscalPeriod,
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    JournalLine,
    PeriodStatus,
    PeriodType,
)
from ledger.models.subledger import (
    Bill,
    BillLine,
    BillStatus,
    Customer,
    CustomerPayment,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    PaymentMethod,
    Supplier,
    SupplierPayment,
)
from ledger.models.bank import (
    BankAccount,
    BankAccountType,
    BankReconciliation,
    BankTransaction,
    ReconciliationStatus,
)
from ledger.models.tax import TaxRate, TaxTransaction, TaxTransactionType, TaxType

__all__ = [
    "Account", "AccountAudit", "AccountCategory", "AccountSubCategory", "AccountType",
    "BalanceBucket", "DocumentCounter", "FiscalPeriod", "JournalEntry",
    "JournalEntryStatus", "JournalEntryType", "JournalLine", "PeriodStatus", "PeriodType",
    "Bill", "BillLine", "BillStatus", "Customer", "CustomerPayment", "Invoice",
    "InvoiceLine", "InvoiceStatus", "PaymentMethod", "Supplier", "SupplierPayment",
    "BankAccount", "BankAccountType", "BankReconciliation", "BankTransaction",
    "ReconciliationStatus",
    "TaxRate", "TaxTransaction", "TaxTransactionType", "TaxType",
]
