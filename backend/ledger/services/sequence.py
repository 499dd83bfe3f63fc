"""Document numbering backed by locked counter rows.

Every human-readable number (``JE-2026-00001``, ``INV-2026-00042`` ...) is
allocated from a ``DocumentCounter`` row keyed by
``(tenant_id, company_id, scope, year)``.  The row is read with
``SELECT ... FOR UPDATE`` and incremented in the caller's transaction, so two
concurrent writers for the same key serialise on the row lock instead of both
computing ``max + 1``.  A rolled-back transaction returns its value.
"""

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.config import settings
from ledger.errors import ValidationFailedError
from ledger.models.gl import DocumentCounter

logger = logging.getLogger(__name__)

JOURNAL_ENTRY = "JE"
INVOICE = "INV"
BILL = "BILL"
CUSTOMER_PAYMENT = "PMT"
SUPPLIER_PAYMENT = "APPMT"
CUSTOMER = "CUST"
SUPPLIER = "SUPP"

SCOPES = frozenset({
    JOURNAL_ENTRY, INVOICE, BILL, CUSTOMER_PAYMENT, SUPPLIER_PAYMENT, CUSTOMER, SUPPLIER,
})


class SequenceError(ValidationFailedError):
    """Unknown scope or malformed counter request."""


def format_document_number(prefix: str, year: int, value: int, padding: int = 5) -> str:
    """``format_document_number("JE", 2026, 7)`` -> ``"JE-2026-00007"``."""
    return f"{prefix}-{year}-{value:0{padding}d}"


async def _locked_counter(
    db: AsyncSession, tenant_id: int, company_id: int, scope: str, year: int
) -> DocumentCounter | None:
    result = await db.execute(
        select(DocumentCounter)
        .where(
            DocumentCounter.tenant_id == tenant_id,
            DocumentCounter.company_id == company_id,
            DocumentCounter.scope == scope,
            DocumentCounter.year == year,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def next_value(
    db: AsyncSession, *, tenant_id: int, company_id: int, scope: str, year: int
) -> int:
    """Increment and return the counter for the given key (first value is 1)."""
    if scope not in SCOPES:
        raise SequenceError(f"Unknown document scope '{scope}'")

    counter = await _locked_counter(db, tenant_id, company_id, scope, year)
    if counter is None:
        # First use of this key.  A concurrent creator may win the insert;
        # the savepoint keeps the rest of the caller's work intact.
        try:
            async with db.begin_nested():
                counter = DocumentCounter(
                    tenant_id=tenant_id,
                    company_id=company_id,
                    scope=scope,
                    year=year,
                    current_value=0,
                )
                db.add(counter)
        except IntegrityError:
            logger.debug("Counter %s/%d created concurrently, retrying", scope, year)
            counter = await _locked_counter(db, tenant_id, company_id, scope, year)
            if counter is None:
                raise

    counter.current_value += 1
    await db.flush()
    logger.debug(
        "Allocated %s-%d #%d (tenant=%d company=%d)",
        scope, year, counter.current_value, tenant_id, company_id,
    )
    return counter.current_value


async def peek_value(
    db: AsyncSession, *, tenant_id: int, company_id: int, scope: str, year: int
) -> int:
    """Current counter value without incrementing (0 when unused)."""
    result = await db.execute(
        select(DocumentCounter.current_value).where(
            DocumentCounter.tenant_id == tenant_id,
            DocumentCounter.company_id == company_id,
            DocumentCounter.scope == scope,
            DocumentCounter.year == year,
        )
    )
    return result.scalar_one_or_none() or 0


async def next_document_number(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    prefix: str,
    on_date: date | None = None,
) -> str:
    """Allocate the next ``PREFIX-YYYY-NNNNN`` number for the year of *on_date*."""
    year = (on_date or date.today()).year
    value = await next_value(
        db, tenant_id=tenant_id, company_id=company_id, scope=prefix, year=year
    )
    return format_document_number(prefix, year, value, settings.document_number_padding)
