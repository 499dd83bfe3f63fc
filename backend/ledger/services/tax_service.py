"""Tax rates, tax arithmetic and the tax transaction log.

Only one default rate is kept per ``tax_type`` within a tenant/company;
marking a rate as default clears the flag on the others.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.errors import (
    BusinessRuleViolationError,
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationFailedError,
)
from ledger.models.gl import Account
from ledger.models.tax import TaxRate, TaxTransaction, TaxTransactionType, TaxType

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


class TaxError(LedgerError):
    """Tax rate / transaction error."""


class TaxRateNotFoundError(TaxError, NotFoundError):
    pass


class TaxTransactionNotFoundError(TaxError, NotFoundError):
    pass


class DuplicateTaxRateError(TaxError, ValidationFailedError):
    pass


class TaxAccountError(TaxError, ReferentialIntegrityError):
    pass


class TaxRateInUseError(TaxError, BusinessRuleViolationError):
    pass


class TaxTransactionStateError(TaxError, StateConflictError):
    pass


def round_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_tax(base_amount: Decimal, rate: Decimal) -> tuple[Decimal, Decimal]:
    """``(tax_amount, total_amount)`` for *base_amount* at *rate* percent."""
    base = Decimal(str(base_amount))
    tax = base * Decimal(str(rate)) / Decimal("100")
    return round_money(tax), round_money(base + tax)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _check_tax_account(
    db: AsyncSession, account_id: int, *, tenant_id: int, company_id: int
) -> None:
    result = await db.execute(
        select(Account.id).where(
            Account.id == account_id,
            Account.tenant_id == tenant_id,
            Account.company_id == company_id,
            Account.is_active.is_(True),
        )
    )
    if result.scalar_one_or_none() is None:
        raise TaxAccountError("Tax account not found or invalid")


async def _clear_defaults(
    db: AsyncSession, *, tenant_id: int, company_id: int, tax_type: TaxType
) -> None:
    await db.execute(
        update(TaxRate)
        .where(
            TaxRate.tenant_id == tenant_id,
            TaxRate.company_id == company_id,
            TaxRate.tax_type == tax_type,
            TaxRate.is_default.is_(True),
        )
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )


async def _require_rate(db: AsyncSession, rate_id: int, tenant_id: int) -> TaxRate:
    rate = await get_tax_rate(db, rate_id, tenant_id=tenant_id)
    if rate is None:
        raise TaxRateNotFoundError("Tax rate not found")
    return rate


# ---------------------------------------------------------------------------
# Tax rates
# ---------------------------------------------------------------------------

async def create_tax_rate(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    code: str,
    name: str,
    rate: Decimal,
    tax_type: TaxType = TaxType.VAT,
    effective_from: date | None = None,
    effective_to: date | None = None,
    description: str | None = None,
    tax_account_id: int | None = None,
    is_default: bool = False,
) -> TaxRate:
    existing = await db.execute(
        select(TaxRate.id).where(
            TaxRate.tenant_id == tenant_id,
            TaxRate.company_id == company_id,
            TaxRate.code == code,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise DuplicateTaxRateError("Tax rate with this code already exists")

    if tax_account_id:
        await _check_tax_account(
            db, tax_account_id, tenant_id=tenant_id, company_id=company_id
        )
    if is_default:
        await _clear_defaults(db, tenant_id=tenant_id, company_id=company_id, tax_type=tax_type)

    tax_rate = TaxRate(
        tenant_id=tenant_id,
        company_id=company_id,
        code=code,
        name=name,
        rate=Decimal(str(rate)),
        tax_type=tax_type,
        effective_from=effective_from or date.today(),
        effective_to=effective_to,
        description=description,
        tax_account_id=tax_account_id,
        is_default=is_default,
        is_active=True,
    )
    db.add(tax_rate)
    await db.flush()
    await db.refresh(tax_rate)
    logger.info("Created tax rate %s (%s%%)", tax_rate.code, tax_rate.rate)
    return tax_rate


async def get_tax_rate(db: AsyncSession, rate_id: int, *, tenant_id: int) -> TaxRate | None:
    result = await db.execute(
        select(TaxRate).where(TaxRate.id == rate_id, TaxRate.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def list_tax_rates(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    tax_type: TaxType | None = None,
    is_active: bool | None = None,
) -> list[TaxRate]:
    q = (
        select(TaxRate)
        .where(TaxRate.tenant_id == tenant_id, TaxRate.company_id == company_id)
        .order_by(TaxRate.code)
    )
    if tax_type:
        q = q.where(TaxRate.tax_type == tax_type)
    if is_active is not None:
        q = q.where(TaxRate.is_active == is_active)
    result = await db.execute(q)
    return list(result.scalars().all())


async def update_tax_rate(
    db: AsyncSession, rate_id: int, *, tenant_id: int, **fields
) -> TaxRate:
    tax_rate = await _require_rate(db, rate_id, tenant_id)
    allowed = {
        "name", "rate", "effective_from", "effective_to", "description",
        "tax_account_id", "is_default", "is_active",
    }
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationFailedError(f"Fields cannot be updated: {sorted(unknown)}")

    if fields.get("tax_account_id"):
        await _check_tax_account(
            db, fields["tax_account_id"], tenant_id=tenant_id, company_id=tax_rate.company_id
        )
    if fields.get("is_default"):
        await _clear_defaults(
            db, tenant_id=tenant_id, company_id=tax_rate.company_id, tax_type=tax_rate.tax_type
        )

    for key, value in fields.items():
        setattr(tax_rate, key, value)
    await db.flush()
    await db.refresh(tax_rate)
    return tax_rate


async def delete_tax_rate(db: AsyncSession, rate_id: int, *, tenant_id: int) -> None:
    tax_rate = await _require_rate(db, rate_id, tenant_id)
    used = await db.execute(select(exists().where(TaxTransaction.tax_rate_id == rate_id)))
    if used.scalar():
        raise TaxRateInUseError(
            "Cannot delete tax rate with existing transactions. Deactivate instead."
        )
    await db.delete(tax_rate)
    await db.flush()
    logger.info("Deleted tax rate %s", tax_rate.code)


async def get_default_tax_rate(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    tax_type: TaxType = TaxType.VAT,
    on_date: date | None = None,
) -> TaxRate | None:
    """The active default rate of *tax_type* effective on *on_date*."""
    on = on_date or date.today()
    result = await db.execute(
        select(TaxRate)
        .where(
            TaxRate.tenant_id == tenant_id,
            TaxRate.company_id == company_id,
            TaxRate.tax_type == tax_type,
            TaxRate.is_default.is_(True),
            TaxRate.is_active.is_(True),
            TaxRate.effective_from <= on,
            or_(TaxRate.effective_to.is_(None), TaxRate.effective_to >= on),
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Tax transactions
# ---------------------------------------------------------------------------

async def record_tax_transaction(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    tax_rate_id: int,
    transaction_date: date,
    transaction_type: TaxTransactionType,
    base_amount: Decimal,
    rate: Decimal | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
) -> TaxTransaction:
    """Log a tax event.  *rate* defaults to the tax rate's own percentage."""
    result = await db.execute(
        select(TaxRate).where(
            TaxRate.id == tax_rate_id,
            TaxRate.tenant_id == tenant_id,
            TaxRate.company_id == company_id,
        )
    )
    tax_rate = result.scalar_one_or_none()
    if tax_rate is None:
        raise TaxRateNotFoundError("Tax rate not found")

    pct = Decimal(str(rate)) if rate is not None else tax_rate.rate
    tax_amount, total_amount = calculate_tax(base_amount, pct)
    txn = TaxTransaction(
        tenant_id=tenant_id,
        company_id=company_id,
        tax_rate_id=tax_rate_id,
        transaction_date=transaction_date,
        transaction_type=transaction_type,
        reference_type=reference_type,
        reference_id=reference_id,
        reference_number=reference_number,
        base_amount=Decimal(str(base_amount)),
        tax_rate=pct,
        tax_amount=tax_amount,
        total_amount=total_amount,
        notes=notes,
        is_reversed=False,
    )
    db.add(txn)
    await db.flush()
    await db.refresh(txn)
    logger.info(
        "Recorded %s tax transaction: %s (%s%%)", transaction_type.value, tax_amount, pct
    )
    return txn


async def list_tax_transactions(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    transaction_type: TaxTransactionType | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    include_reversed: bool = False,
) -> list[TaxTransaction]:
    q = (
        select(TaxTransaction)
        .where(TaxTransaction.tenant_id == tenant_id, TaxTransaction.company_id == company_id)
        .order_by(TaxTransaction.transaction_date.desc(), TaxTransaction.id.desc())
    )
    if not include_reversed:
        q = q.where(TaxTransaction.is_reversed.is_(False))
    if transaction_type:
        q = q.where(TaxTransaction.transaction_type == transaction_type)
    if start_date:
        q = q.where(TaxTransaction.transaction_date >= start_date)
    if end_date:
        q = q.where(TaxTransaction.transaction_date <= end_date)
    result = await db.execute(q)
    return list(result.scalars().all())


async def reverse_tax_transaction(
    db: AsyncSession, transaction_id: int, *, tenant_id: int
) -> TaxTransaction:
    result = await db.execute(
        select(TaxTransaction).where(
            TaxTransaction.id == transaction_id, TaxTransaction.tenant_id == tenant_id
        )
    )
    txn = result.scalar_one_or_none()
    if txn is None:
        raise TaxTransactionNotFoundError("Tax transaction not found")
    if txn.is_reversed:
        raise TaxTransactionStateError("Tax transaction already reversed")

    txn.is_reversed = True
    txn.reversed_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("Reversed tax transaction %d", txn.id)
    return txn
