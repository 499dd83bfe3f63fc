"""Customers (AR) and suppliers (AP).

Both parties share one table shape, so the public functions are thin
wrappers over helpers parameterised by model.  Codes come from the document
counter (``CUST-2026-00001`` / ``SUPP-2026-00001``) unless supplied.
"""

import logging
from typing import Any

from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.config import settings
from ledger.errors import (
    BusinessRuleViolationError,
    LedgerError,
    NotFoundError,
    ValidationFailedError,
)
from ledger.models.subledger import Bill, Customer, Invoice, Supplier
from ledger.services import sequence

logger = logging.getLogger(__name__)


class PartyError(LedgerError):
    """Customer / supplier error."""


class PartyNotFoundError(PartyError, NotFoundError):
    pass


class DuplicatePartyError(PartyError, ValidationFailedError):
    pass


class PartyInUseError(PartyError, BusinessRuleViolationError):
    pass


_UPDATABLE = {
    "code", "name", "legal_name", "email", "phone", "tax_id", "address", "country",
    "payment_terms", "credit_limit", "currency_code", "notes", "is_active",
}

_LABELS = {Customer: "Customer", Supplier: "Supplier"}
_PREFIXES = {Customer: sequence.CUSTOMER, Supplier: sequence.SUPPLIER}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

async def _check_unique(
    db: AsyncSession,
    model,
    *,
    tenant_id: int,
    company_id: int,
    name: str | None = None,
    code: str | None = None,
    email: str | None = None,
    exclude_id: int | None = None,
) -> None:
    clauses = []
    if name:
        clauses.append(model.name == name)
    if code:
        clauses.append(model.code == code)
    if email:
        clauses.append(model.email == email)
    if not clauses:
        return

    q = select(model).where(
        model.tenant_id == tenant_id, model.company_id == company_id, or_(*clauses)
    )
    if exclude_id is not None:
        q = q.where(model.id != exclude_id)
    result = await db.execute(q.limit(1))
    clash = result.scalar_one_or_none()
    if clash is None:
        return

    label = _LABELS[model]
    if name and clash.name == name:
        raise DuplicatePartyError(f"{label} with this name already exists")
    if code and clash.code == code:
        raise DuplicatePartyError(f"{label} with this code already exists")
    raise DuplicatePartyError(f"{label} with this email already exists")


async def _create(db: AsyncSession, model, *, tenant_id: int, company_id: int, **fields):
    await _check_unique(
        db,
        model,
        tenant_id=tenant_id,
        company_id=company_id,
        name=fields.get("name"),
        code=fields.get("code"),
        email=fields.get("email"),
    )
    if not fields.get("code"):
        fields["code"] = await sequence.next_document_number(
            db, tenant_id=tenant_id, company_id=company_id, prefix=_PREFIXES[model]
        )
    fields.setdefault("payment_terms", settings.default_payment_terms_days)
    fields.setdefault("currency_code", settings.default_currency)
    if fields["payment_terms"] is None:
        fields["payment_terms"] = settings.default_payment_terms_days
    if fields["currency_code"] is None:
        fields["currency_code"] = settings.default_currency

    party = model(tenant_id=tenant_id, company_id=company_id, is_active=True, **fields)
    db.add(party)
    await db.flush()
    await db.refresh(party)
    logger.info("Created %s %s: %s", _LABELS[model].lower(), party.code, party.name)
    return party


async def _get(db: AsyncSession, model, party_id: int, tenant_id: int):
    result = await db.execute(
        select(model).where(model.id == party_id, model.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def _require(db: AsyncSession, model, party_id: int, tenant_id: int):
    party = await _get(db, model, party_id, tenant_id)
    if party is None:
        raise PartyNotFoundError(f"{_LABELS[model]} not found")
    return party


async def _update(db: AsyncSession, model, party_id: int, tenant_id: int, fields: dict[str, Any]):
    party = await _require(db, model, party_id, tenant_id)
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValidationFailedError(f"Fields cannot be updated: {sorted(unknown)}")

    await _check_unique(
        db,
        model,
        tenant_id=tenant_id,
        company_id=party.company_id,
        name=fields.get("name") if fields.get("name") != party.name else None,
        code=fields.get("code") if fields.get("code") != party.code else None,
        email=fields.get("email") if fields.get("email") != party.email else None,
        exclude_id=party.id,
    )
    for key, value in fields.items():
        setattr(party, key, value)
    await db.flush()
    await db.refresh(party)
    return party


async def _list(
    db: AsyncSession,
    model,
    *,
    tenant_id: int,
    company_id: int,
    is_active: bool | None,
    search: str | None,
):
    q = (
        select(model)
        .where(model.tenant_id == tenant_id, model.company_id == company_id)
        .order_by(model.name)
    )
    if is_active is not None:
        q = q.where(model.is_active == is_active)
    if search:
        pattern = f"%{search}%"
        q = q.where(
            model.name.ilike(pattern) | model.code.ilike(pattern) | model.email.ilike(pattern)
        )
    result = await db.execute(q)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

async def create_customer(
    db: AsyncSession, *, tenant_id: int, company_id: int, name: str, **fields
) -> Customer:
    return await _create(
        db, Customer, tenant_id=tenant_id, company_id=company_id, name=name, **fields
    )


async def get_customer(db: AsyncSession, customer_id: int, *, tenant_id: int) -> Customer | None:
    return await _get(db, Customer, customer_id, tenant_id)


async def list_customers(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    is_active: bool | None = None,
    search: str | None = None,
) -> list[Customer]:
    return await _list(
        db, Customer, tenant_id=tenant_id, company_id=company_id,
        is_active=is_active, search=search,
    )


async def update_customer(
    db: AsyncSession, customer_id: int, *, tenant_id: int, **fields
) -> Customer:
    return await _update(db, Customer, customer_id, tenant_id, fields)


async def delete_customer(db: AsyncSession, customer_id: int, *, tenant_id: int) -> None:
    """Hard-delete a customer that has never been invoiced."""
    customer = await _require(db, Customer, customer_id, tenant_id)
    has_invoices = await db.execute(select(exists().where(Invoice.customer_id == customer_id)))
    if has_invoices.scalar():
        raise PartyInUseError(
            "Cannot delete customer with existing invoices. Deactivate instead."
        )
    await db.delete(customer)
    await db.flush()
    logger.info("Deleted customer %s", customer.code)


# ---------------------------------------------------------------------------
# Suppliers
# ---------------------------------------------------------------------------

async def create_supplier(
    db: AsyncSession, *, tenant_id: int, company_id: int, name: str, **fields
) -> Supplier:
    return await _create(
        db, Supplier, tenant_id=tenant_id, company_id=company_id, name=name, **fields
    )


async def get_supplier(db: AsyncSession, supplier_id: int, *, tenant_id: int) -> Supplier | None:
    return await _get(db, Supplier, supplier_id, tenant_id)


async def list_suppliers(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    is_active: bool | None = None,
    search: str | None = None,
) -> list[Supplier]:
    return await _list(
        db, Supplier, tenant_id=tenant_id, company_id=company_id,
        is_active=is_active, search=search,
    )


async def update_supplier(
    db: AsyncSession, supplier_id: int, *, tenant_id: int, **fields
) -> Supplier:
    return await _update(db, Supplier, supplier_id, tenant_id, fields)


async def delete_supplier(db: AsyncSession, supplier_id: int, *, tenant_id: int) -> None:
    """Hard-delete a supplier that has no bills."""
    supplier = await _require(db, Supplier, supplier_id, tenant_id)
    has_bills = await db.execute(select(exists().where(Bill.supplier_id == supplier_id)))
    if has_bills.scalar():
        raise PartyInUseError(
            "Cannot delete supplier with existing bills. Deactivate instead."
        )
    await db.delete(supplier)
    await db.flush()
    logger.info("Deleted supplier %s", supplier.code)
