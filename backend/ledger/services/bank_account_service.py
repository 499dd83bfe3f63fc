"""Bank accounts linked to cash/bank GL accounts."""

import logging
from decimal import Decimal

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.config import settings
from ledger.errors import (
    BusinessRuleViolationError,
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationFailedError,
)
from ledger.models.bank import BankAccount, BankAccountType, BankTransaction
from ledger.models.gl import Account, AccountCategory, AccountSubCategory

logger = logging.getLogger(__name__)

_CASH_ROLES = (AccountSubCategory.CASH, AccountSubCategory.BANK)


class BankAccountError(LedgerError):
    """Bank account error."""


class BankAccountNotFoundError(BankAccountError, NotFoundError):
    pass


class DuplicateBankAccountError(BankAccountError, ValidationFailedError):
    pass


class BankGLAccountError(BankAccountError, ReferentialIntegrityError):
    pass


class BankAccountInUseError(BankAccountError, BusinessRuleViolationError):
    pass


async def _check_gl_account(
    db: AsyncSession, gl_account_id: int, *, tenant_id: int, company_id: int
) -> Account:
    result = await db.execute(
        select(Account).where(
            Account.id == gl_account_id,
            Account.tenant_id == tenant_id,
            Account.company_id == company_id,
            Account.account_category == AccountCategory.ASSET,
            Account.sub_category.in_(_CASH_ROLES),
            Account.is_active.is_(True),
        )
    )
    account = result.scalar_one_or_none()
    if account is None:
        raise BankGLAccountError("GL Cash account not found or invalid")
    return account


async def create_bank_account(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    gl_account_id: int,
    account_number: str,
    account_name: str,
    bank_name: str,
    account_type: BankAccountType = BankAccountType.CURRENT,
    bank_branch: str | None = None,
    currency_code: str | None = None,
    opening_balance: Decimal = Decimal("0"),
    notes: str | None = None,
) -> BankAccount:
    """Register a bank account.  The opening balance seeds the current balance."""
    existing = await db.execute(
        select(BankAccount.id).where(
            BankAccount.tenant_id == tenant_id,
            BankAccount.company_id == company_id,
            BankAccount.account_number == account_number,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateBankAccountError("Bank account with this account number already exists")

    await _check_gl_account(db, gl_account_id, tenant_id=tenant_id, company_id=company_id)

    opening = Decimal(str(opening_balance or 0))
    bank_account = BankAccount(
        tenant_id=tenant_id,
        company_id=company_id,
        gl_account_id=gl_account_id,
        account_number=account_number,
        account_name=account_name,
        bank_name=bank_name,
        bank_branch=bank_branch,
        account_type=account_type,
        currency_code=currency_code or settings.default_currency,
        opening_balance=opening,
        current_balance=opening,
        notes=notes,
        is_active=True,
    )
    db.add(bank_account)
    await db.flush()
    await db.refresh(bank_account)
    logger.info(
        "Created bank account %s - %s", bank_account.account_number, bank_account.account_name
    )
    return bank_account


async def get_bank_account(
    db: AsyncSession, bank_account_id: int, *, tenant_id: int
) -> BankAccount | None:
    result = await db.execute(
        select(BankAccount).where(
            BankAccount.id == bank_account_id, BankAccount.tenant_id == tenant_id
        )
    )
    return result.scalar_one_or_none()


async def require_bank_account(
    db: AsyncSession, bank_account_id: int, *, tenant_id: int
) -> BankAccount:
    bank_account = await get_bank_account(db, bank_account_id, tenant_id=tenant_id)
    if bank_account is None:
        raise BankAccountNotFoundError("Bank account not found")
    return bank_account


async def list_bank_accounts(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    is_active: bool | None = None,
) -> list[BankAccount]:
    q = (
        select(BankAccount)
        .where(BankAccount.tenant_id == tenant_id, BankAccount.company_id == company_id)
        .order_by(BankAccount.account_name)
    )
    if is_active is not None:
        q = q.where(BankAccount.is_active == is_active)
    result = await db.execute(q)
    return list(result.scalars().all())


async def update_bank_account(
    db: AsyncSession, bank_account_id: int, *, tenant_id: int, **fields
) -> BankAccount:
    bank_account = await require_bank_account(db, bank_account_id, tenant_id=tenant_id)
    allowed = {
        "account_name", "bank_name", "bank_branch", "account_type",
        "gl_account_id", "notes", "is_active",
    }
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationFailedError(f"Fields cannot be updated: {sorted(unknown)}")

    if fields.get("gl_account_id") and fields["gl_account_id"] != bank_account.gl_account_id:
        await _check_gl_account(
            db,
            fields["gl_account_id"],
            tenant_id=tenant_id,
            company_id=bank_account.company_id,
        )
    for key, value in fields.items():
        setattr(bank_account, key, value)
    await db.flush()
    await db.refresh(bank_account)
    return bank_account


async def delete_bank_account(db: AsyncSession, bank_account_id: int, *, tenant_id: int) -> None:
    bank_account = await require_bank_account(db, bank_account_id, tenant_id=tenant_id)
    has_txns = await db.execute(
        select(exists().where(BankTransaction.bank_account_id == bank_account_id))
    )
    if has_txns.scalar():
        raise BankAccountInUseError(
            "Cannot delete bank account with existing transactions. Deactivate instead."
        )
    await db.delete(bank_account)
    await db.flush()
    logger.info("Deleted bank account %s", bank_account.account_number)


async def adjust_bank_balance(
    db: AsyncSession,
    bank_account_id: int,
    amount: Decimal,
    *,
    tenant_id: int,
    is_debit: bool,
) -> Decimal:
    """Add (debit) or subtract (credit) *amount* from the current balance.

    Applied as a single ``UPDATE ... SET current_balance = current_balance + x``.
    Returns the new balance.
    """
    delta = Decimal(str(amount)) if is_debit else -Decimal(str(amount))
    result = await db.execute(
        update(BankAccount)
        .where(BankAccount.id == bank_account_id, BankAccount.tenant_id == tenant_id)
        .values(current_balance=BankAccount.current_balance + delta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise BankAccountNotFoundError("Bank account not found")

    bank_account = await require_bank_account(db, bank_account_id, tenant_id=tenant_id)
    await db.refresh(bank_account, ["current_balance"])
    return bank_account.current_balance
