"""Tax arithmetic, rates and the tax transaction log."""

import pytest
from datetime import date
from decimal import Decimal

from conftest import COMPANY, TENANT

from ledger.models.tax import TaxTransactionType, TaxType
from ledger.services.tax_service import (
    DuplicateTaxRateError,
    TaxAccountError,
    TaxRateInUseError,
    TaxTransactionStateError,
    calculate_tax,
    create_tax_rate,
    delete_tax_rate,
    get_default_tax_rate,
    get_tax_rate,
    list_tax_rates,
    list_tax_transactions,
    record_tax_transaction,
    reverse_tax_transaction,
    round_money,
    update_tax_rate,
)


class TestArithmetic:

    @pytest.mark.parametrize("value,expected", [
        ("1.005", "1.01"),
        ("1.004", "1.00"),
        ("-2.345", "-2.35"),
        ("10", "10.00"),
    ])
    def test_round_half_up(self, value, expected):
        assert round_money(Decimal(value)) == Decimal(expected)

    def test_calculate_tax(self):
        assert calculate_tax(Decimal("1000"), Decimal("15")) == (
            Decimal("150.00"), Decimal("1150.00"),
        )
        assert calculate_tax(Decimal("33.33"), Decimal("15")) == (
            Decimal("5.00"), Decimal("38.33"),
        )
        assert calculate_tax(Decimal("80"), 0) == (Decimal("0.00"), Decimal("80.00"))


async def _vat(db, code="VAT15", rate="15", **extra):
    return await create_tax_rate(
        db, tenant_id=TENANT, company_id=COMPANY, code=code, name=f"VAT {rate}%",
        rate=Decimal(rate), effective_from=date(2026, 1, 1), **extra,
    )


class TestRates:

    async def test_duplicate_code(self, db):
        await _vat(db)
        with pytest.raises(DuplicateTaxRateError):
            await _vat(db)

    async def test_tax_account_must_exist(self, db, coa):
        rate = await _vat(db, tax_account_id=coa["2120"].id)
        assert rate.tax_account_id == coa["2120"].id
        with pytest.raises(TaxAccountError):
            await _vat(db, code="VAT0", rate="0", tax_account_id=999999)

    async def test_single_default_per_type(self, db):
        first = await _vat(db, is_default=True)
        second = await _vat(db, code="VAT12", rate="12", is_default=True)
        await db.refresh(first)
        assert not first.is_default
        assert second.is_default

        default = await get_default_tax_rate(
            db, tenant_id=TENANT, company_id=COMPANY, on_date=date(2026, 6, 1)
        )
        assert default.id == second.id

        await update_tax_rate(db, first.id, tenant_id=TENANT, is_default=True)
        await db.refresh(second)
        assert not second.is_default

    async def test_default_respects_effective_window(self, db):
        await _vat(db, is_default=True, effective_to=date(2026, 6, 30))
        assert await get_default_tax_rate(
            db, tenant_id=TENANT, company_id=COMPANY, on_date=date(2026, 7, 1)
        ) is None
        assert await get_default_tax_rate(
            db, tenant_id=TENANT, company_id=COMPANY, on_date=date(2025, 12, 31)
        ) is None
        assert await get_default_tax_rate(
            db, tenant_id=TENANT, company_id=COMPANY, tax_type=TaxType.WITHHOLDING,
            on_date=date(2026, 3, 1),
        ) is None

    async def test_list_and_deactivate(self, db):
        vat = await _vat(db)
        await _vat(db, code="WHT5", rate="5", tax_type=TaxType.WITHHOLDING)
        await update_tax_rate(db, vat.id, tenant_id=TENANT, is_active=False)
        active = await list_tax_rates(db, tenant_id=TENANT, company_id=COMPANY, is_active=True)
        assert [r.code for r in active] == ["WHT5"]

    async def test_unused_rate_deleted(self, db):
        vat = await _vat(db)
        await delete_tax_rate(db, vat.id, tenant_id=TENANT)
        assert await get_tax_rate(db, vat.id, tenant_id=TENANT) is None


class TestTransactions:

    async def test_record_uses_rate_percentage(self, db):
        vat = await _vat(db)
        txn = await record_tax_transaction(
            db, tenant_id=TENANT, company_id=COMPANY, tax_rate_id=vat.id,
            transaction_date=date(2026, 3, 1), transaction_type=TaxTransactionType.OUTPUT,
            base_amount=Decimal("200"), reference_type="invoice", reference_number="INV-2026-00001",
        )
        assert txn.tax_rate == Decimal("15")
        assert txn.tax_amount == Decimal("30.00")
        assert txn.total_amount == Decimal("230.00")

        override = await record_tax_transaction(
            db, tenant_id=TENANT, company_id=COMPANY, tax_rate_id=vat.id,
            transaction_date=date(2026, 3, 2), transaction_type=TaxTransactionType.INPUT,
            base_amount=Decimal("100"), rate=Decimal("0"),
        )
        assert override.tax_amount == Decimal("0.00")

    async def test_reversal_hides_from_default_listing(self, db):
        vat = await _vat(db)
        txn = await record_tax_transaction(
            db, tenant_id=TENANT, company_id=COMPANY, tax_rate_id=vat.id,
            transaction_date=date(2026, 3, 1), transaction_type=TaxTransactionType.OUTPUT,
            base_amount=Decimal("50"),
        )
        reversed_txn = await reverse_tax_transaction(db, txn.id, tenant_id=TENANT)
        assert reversed_txn.is_reversed
        assert reversed_txn.reversed_at is not None

        assert await list_tax_transactions(db, tenant_id=TENANT, company_id=COMPANY) == []
        everything = await list_tax_transactions(
            db, tenant_id=TENANT, company_id=COMPANY, include_reversed=True
        )
        assert [t.id for t in everything] == [txn.id]

        with pytest.raises(TaxTransactionStateError, match="already reversed"):
            await reverse_tax_transaction(db, txn.id, tenant_id=TENANT)

    async def test_rate_in_use_cannot_be_deleted(self, db):
        vat = await _vat(db)
        await record_tax_transaction(
            db, tenant_id=TENANT, company_id=COMPANY, tax_rate_id=vat.id,
            transaction_date=date(2026, 3, 1), transaction_type=TaxTransactionType.INPUT,
            base_amount=Decimal("10"),
        )
        with pytest.raises(TaxRateInUseError):
            await delete_tax_rate(db, vat.id, tenant_id=TENANT)
