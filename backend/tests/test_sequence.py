"""Document counters."""

import pytest
from datetime import date

from conftest import COMPANY, TENANT

from ledger.errors import ValidationFailedError
from ledger.services.sequence import (
    INVOICE,
    JOURNAL_ENTRY,
    SequenceError,
    format_document_number,
    next_document_number,
    next_value,
    peek_value,
)


def test_format_pads_value():
    assert format_document_number("JE", 2026, 7) == "JE-2026-00007"
    assert format_document_number("INV", 2026, 123456) == "INV-2026-123456"
    assert format_document_number("BILL", 2027, 3, padding=3) == "BILL-2027-003"


class TestCounters:

    async def test_first_value_is_one_and_increments(self, db):
        key = dict(tenant_id=TENANT, company_id=COMPANY, scope=JOURNAL_ENTRY, year=2026)
        assert await peek_value(db, **key) == 0
        assert await next_value(db, **key) == 1
        assert await next_value(db, **key) == 2
        assert await peek_value(db, **key) == 2

    async def test_keys_are_independent(self, db):
        base = dict(tenant_id=TENANT, company_id=COMPANY)
        await next_value(db, **base, scope=JOURNAL_ENTRY, year=2026)
        await next_value(db, **base, scope=JOURNAL_ENTRY, year=2026)

        assert await next_value(db, **base, scope=JOURNAL_ENTRY, year=2027) == 1
        assert await next_value(db, **base, scope=INVOICE, year=2026) == 1
        assert await next_value(
            db, tenant_id=TENANT, company_id=COMPANY + 1, scope=JOURNAL_ENTRY, year=2026
        ) == 1
        assert await next_value(
            db, tenant_id=TENANT + 1, company_id=COMPANY, scope=JOURNAL_ENTRY, year=2026
        ) == 1

    async def test_unknown_scope(self, db):
        with pytest.raises(SequenceError, match="Unknown document scope 'XX'"):
            await next_value(db, tenant_id=TENANT, company_id=COMPANY, scope="XX", year=2026)
        assert issubclass(SequenceError, ValidationFailedError)

    async def test_document_number_uses_date_year(self, db, ledger):
        first = await next_document_number(
            db, tenant_id=TENANT, company_id=COMPANY, prefix=INVOICE, on_date=date(2026, 3, 1)
        )
        second = await next_document_number(
            db, tenant_id=TENANT, company_id=COMPANY, prefix=INVOICE, on_date=date(2026, 9, 1)
        )
        next_year = await next_document_number(
            db, tenant_id=TENANT, company_id=COMPANY, prefix=INVOICE, on_date=date(2027, 1, 2)
        )
        assert (first, second, next_year) == (
            "INV-2026-00001", "INV-2026-00002", "INV-2027-00001",
        )
