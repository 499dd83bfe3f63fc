"""Tests for the journal engine.

Tests cover:
- Line validation (balance, one-sided lines, zero lines)
- Status workflow (DRAFT → POSTED → REVERSED)
- Cannot post to closed or locked periods
- Reversal creates a posted mirror entry and nets balances to zero
- Immutability of posted entries
- Entry number generation
"""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import COMPANY, TENANT, cr, d, dr

from ledger.errors import NotFoundError, StateConflictError, ValidationFailedError
from ledger.models.gl import (
    FiscalPeriod,
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    PeriodStatus,
)
from ledger.services.gl.balance_service import get_account_balance
from ledger.services.gl.coa_service import deactivate_account
from ledger.services.gl.journal_engine import (
    AccountInactiveError,
    BalanceError,
    EntryNotFoundError,
    JournalEngineError,
    PeriodClosedError,
    PeriodNotFoundError,
    StatusTransitionError,
    create_and_post_entry,
    create_journal_entry,
    delete_journal_entry,
    get_journal_entry,
    list_journal_entries,
    post_entry,
    reverse_entry,
    update_journal_entry,
    validate_lines,
)
from ledger.services.gl.period_service import (
    close_period,
    create_default_fiscal_periods,
    lock_period,
)


# ===================================================================
# Line validation (pure functions, no DB)
# ===================================================================


class TestLineValidation:

    def test_balanced_entry(self):
        lines = [{"debit": 1000, "credit": 0}, {"debit": 0, "credit": 1000}]
        assert validate_lines(lines) == (Decimal("1000"), Decimal("1000"))

    def test_unbalanced_entry_reports_totals(self):
        lines = [{"debit": 100, "credit": 0}, {"debit": 0, "credit": 90}]
        with pytest.raises(BalanceError, match="Debits: 100, Credits: 90"):
            validate_lines(lines)

    def test_single_line_raises(self):
        with pytest.raises(BalanceError, match="at least 2 lines"):
            validate_lines([{"debit": 1000, "credit": 0}])

    def test_both_sides_raises(self):
        lines = [{"debit": 50, "credit": 50}, {"debit": 0, "credit": 0.01}]
        with pytest.raises(BalanceError, match="both debit and credit"):
            validate_lines(lines)

    def test_zero_line_raises(self):
        lines = [{"debit": 0, "credit": 0}, {"debit": 10, "credit": 0}]
        with pytest.raises(BalanceError, match="either debit or credit"):
            validate_lines(lines)

    def test_negative_amount_raises(self):
        lines = [{"debit": -10, "credit": 0}, {"debit": 0, "credit": -10}]
        with pytest.raises(BalanceError, match="non-negative"):
            validate_lines(lines)

    def test_sub_cent_difference_tolerated(self):
        lines = [{"debit": "100.004", "credit": 0}, {"debit": 0, "credit": "100.00"}]
        dr_total, cr_total = validate_lines(lines)
        assert dr_total - cr_total < Decimal("0.01")

    def test_penny_difference_raises(self):
        lines = [{"debit": "1000.01", "credit": 0}, {"debit": 0, "credit": "1000.00"}]
        with pytest.raises(BalanceError, match="not balanced"):
            validate_lines(lines)

    def test_totals_printed_without_trailing_zeros(self):
        lines = [{"debit": "1000.50", "credit": 0}, {"debit": 0, "credit": "1000.00"}]
        with pytest.raises(BalanceError) as exc_info:
            validate_lines(lines)
        assert str(exc_info.value).endswith("Debits: 1000.5, Credits: 1000")

    def test_balance_error_is_validation_failure(self):
        assert issubclass(BalanceError, ValidationFailedError)
        assert issubclass(BalanceError, JournalEngineError)


# ===================================================================
# Status transitions (mock DB)
# ===================================================================


class TestStatusTransitions:

    def _make_entry(self, status: JournalEntryStatus, **overrides) -> JournalEntry:
        entry = MagicMock(spec=JournalEntry)
        entry.id = 1
        entry.entry_number = "JE-2026-00001"
        entry.entry_date = d(1)
        entry.company_id = COMPANY
        entry.status = status
        entry.reversed_at = None
        entry.reversing_entry_id = None
        for k, v in overrides.items():
            setattr(entry, k, v)
        return entry

    def _period(self, status: PeriodStatus) -> FiscalPeriod:
        period = MagicMock(spec=FiscalPeriod)
        period.id = 10
        period.status = status
        return period

    @pytest.mark.asyncio
    async def test_post_draft_succeeds(self):
        entry = self._make_entry(JournalEntryStatus.DRAFT)
        db = AsyncMock()

        with patch(
            "ledger.services.gl.journal_engine.get_journal_entry", return_value=entry
        ), patch(
            "ledger.services.gl.journal_engine.find_periods_containing",
            return_value=[self._period(PeriodStatus.OPEN)],
        ):
            result = await post_entry(db, 1, tenant_id=TENANT, user_id=42)
            assert result.status == JournalEntryStatus.POSTED
            assert result.posted_by == 42
            assert result.posted_at is not None

    @pytest.mark.asyncio
    async def test_post_non_draft_fails(self):
        entry = self._make_entry(JournalEntryStatus.POSTED)
        db = AsyncMock()

        with patch("ledger.services.gl.journal_engine.get_journal_entry", return_value=entry):
            with pytest.raises(StatusTransitionError, match="Can only post draft"):
                await post_entry(db, 1, tenant_id=TENANT, user_id=42)

    @pytest.mark.asyncio
    async def test_post_to_closed_period_fails(self):
        entry = self._make_entry(JournalEntryStatus.DRAFT)
        db = AsyncMock()

        with patch(
            "ledger.services.gl.journal_engine.get_journal_entry", return_value=entry
        ), patch(
            "ledger.services.gl.journal_engine.find_periods_containing",
            return_value=[self._period(PeriodStatus.CLOSED)],
        ):
            with pytest.raises(PeriodClosedError, match="closed or locked"):
                await post_entry(db, 1, tenant_id=TENANT)
        assert entry.status == JournalEntryStatus.DRAFT

    @pytest.mark.asyncio
    async def test_post_without_period_fails(self):
        entry = self._make_entry(JournalEntryStatus.DRAFT)
        db = AsyncMock()

        with patch(
            "ledger.services.gl.journal_engine.get_journal_entry", return_value=entry
        ), patch(
            "ledger.services.gl.journal_engine.find_periods_containing", return_value=[]
        ):
            with pytest.raises(PeriodNotFoundError):
                await post_entry(db, 1, tenant_id=TENANT)

    @pytest.mark.asyncio
    async def test_reverse_draft_fails(self):
        entry = self._make_entry(JournalEntryStatus.DRAFT)
        db = AsyncMock()

        with patch("ledger.services.gl.journal_engine.get_journal_entry", return_value=entry):
            with pytest.raises(StatusTransitionError, match="Can only reverse posted"):
                await reverse_entry(db, 1, tenant_id=TENANT)

    @pytest.mark.asyncio
    async def test_reverse_reversed_fails(self):
        entry = self._make_entry(JournalEntryStatus.REVERSED, reversing_entry_id=2)
        db = AsyncMock()

        with patch("ledger.services.gl.journal_engine.get_journal_entry", return_value=entry):
            with pytest.raises(StateConflictError):
                await reverse_entry(db, 1, tenant_id=TENANT)

    @pytest.mark.asyncio
    async def test_update_posted_fails(self):
        entry = self._make_entry(JournalEntryStatus.POSTED)
        db = AsyncMock()

        with patch("ledger.services.gl.journal_engine.get_journal_entry", return_value=entry):
            with pytest.raises(StatusTransitionError, match="Can only update draft"):
                await update_journal_entry(db, 1, tenant_id=TENANT, description="x")

    @pytest.mark.asyncio
    async def test_delete_posted_fails(self):
        entry = self._make_entry(JournalEntryStatus.POSTED)
        db = AsyncMock()

        with patch("ledger.services.gl.journal_engine.get_journal_entry", return_value=entry):
            with pytest.raises(StatusTransitionError, match="Can only delete draft"):
                await delete_journal_entry(db, 1, tenant_id=TENANT)
        db.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_entry_not_found(self):
        db = AsyncMock()

        with patch("ledger.services.gl.journal_engine.get_journal_entry", return_value=None):
            with pytest.raises(EntryNotFoundError, match="not found"):
                await post_entry(db, 999, tenant_id=TENANT)
        assert issubclass(EntryNotFoundError, NotFoundError)


# ===================================================================
# Engine against a real session
# ===================================================================


class TestJournalLifecycle:

    async def test_create_draft_entry(self, db, ledger):
        entry = await create_journal_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(1),
            description="Owner investment",
            lines=[dr(ledger["1110"], 500), cr(ledger["3100"], 500)],
            created_by=7,
        )
        assert entry.status == JournalEntryStatus.DRAFT
        assert entry.entry_type == JournalEntryType.MANUAL
        assert entry.entry_number == "JE-2026-00001"
        assert [ln.line_number for ln in entry.lines] == [1, 2]
        assert entry.is_balanced
        assert entry.total_debits == Decimal("500")

    async def test_entry_numbers_increment(self, db, ledger):
        numbers = []
        for _ in range(3):
            entry = await create_journal_entry(
                db,
                tenant_id=TENANT,
                company_id=COMPANY,
                entry_date=d(2),
                description="Cash sale",
                lines=[dr(ledger["1110"], 10), cr(ledger["4100"], 10)],
            )
            numbers.append(entry.entry_number)
        assert numbers == ["JE-2026-00001", "JE-2026-00002", "JE-2026-00003"]

    async def test_unbalanced_entry_rejected(self, db, ledger):
        with pytest.raises(BalanceError, match="Debits: 100, Credits: 90"):
            await create_journal_entry(
                db,
                tenant_id=TENANT,
                company_id=COMPANY,
                entry_date=d(1),
                description="Bad",
                lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 90)],
            )

    async def test_inactive_account_rejected(self, db, ledger):
        await deactivate_account(db, ledger["6200"].id, tenant_id=TENANT)
        with pytest.raises(AccountInactiveError, match="6200 - Rent Expense is inactive"):
            await create_journal_entry(
                db,
                tenant_id=TENANT,
                company_id=COMPANY,
                entry_date=d(1),
                description="Rent",
                lines=[dr(ledger["6200"], 100), cr(ledger["1110"], 100)],
            )

    async def test_foreign_account_rejected(self, db, ledger):
        await create_default_fiscal_periods(
            db, tenant_id=TENANT, company_id=COMPANY + 1, year=2026
        )
        with pytest.raises(AccountInactiveError, match="not found"):
            await create_journal_entry(
                db,
                tenant_id=TENANT,
                company_id=COMPANY + 1,
                entry_date=d(1),
                description="Other company",
                lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
            )

    async def test_date_outside_periods_rejected(self, db, ledger):
        with pytest.raises(PeriodNotFoundError, match="No fiscal period"):
            await create_journal_entry(
                db,
                tenant_id=TENANT,
                company_id=COMPANY,
                entry_date=d(1).replace(year=2030),
                description="Far future",
                lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
            )

    async def test_posting_into_closed_month_rejected(self, db, ledger, periods):
        march = next(p for p in periods if p.name == "Mar 2026")
        await close_period(db, march.id, tenant_id=TENANT, user_id=1)
        with pytest.raises(PeriodClosedError):
            await create_journal_entry(
                db,
                tenant_id=TENANT,
                company_id=COMPANY,
                entry_date=d(3),
                description="Too late",
                lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
            )

    async def test_locked_year_blocks_open_month(self, db, ledger, periods):
        fy = periods[0]
        await close_period(db, fy.id, tenant_id=TENANT)
        await lock_period(db, fy.id, tenant_id=TENANT)
        with pytest.raises(PeriodClosedError):
            await create_journal_entry(
                db,
                tenant_id=TENANT,
                company_id=COMPANY,
                entry_date=d(5),
                description="Inside locked year",
                lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
            )

    async def test_draft_attached_to_month(self, db, ledger, periods):
        entry = await create_journal_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(4, 30),
            description="Month-end",
            lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
        )
        april = next(p for p in periods if p.name == "Apr 2026")
        assert entry.fiscal_period_id == april.id

    async def test_update_draft_replaces_lines(self, db, ledger):
        entry = await create_journal_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(1),
            description="Draft",
            lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
        )
        updated = await update_journal_entry(
            db,
            entry.id,
            tenant_id=TENANT,
            description="Corrected",
            lines=[
                dr(ledger["1120"], 60),
                dr(ledger["1110"], 40),
                cr(ledger["4200"], 100),
            ],
        )
        assert updated.description == "Corrected"
        assert len(updated.lines) == 3
        assert {ln.account_id for ln in updated.lines} == {
            ledger["1120"].id, ledger["1110"].id, ledger["4200"].id,
        }

    async def test_post_then_update_rejected(self, db, ledger):
        entry = await create_journal_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(1),
            description="Sale",
            lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
        )
        posted = await post_entry(db, entry.id, tenant_id=TENANT, user_id=3)
        assert posted.status == JournalEntryStatus.POSTED
        assert posted.posted_by == 3

        with pytest.raises(StatusTransitionError):
            await post_entry(db, entry.id, tenant_id=TENANT)
        with pytest.raises(StatusTransitionError):
            await update_journal_entry(db, entry.id, tenant_id=TENANT, description="Edit")

    async def test_cash_sale_balances(self, db, ledger):
        await create_and_post_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(1),
            description="Cash sale",
            lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
        )
        cash = await get_account_balance(
            db, ledger["1110"].id, tenant_id=TENANT, company_id=COMPANY
        )
        revenue = await get_account_balance(
            db, ledger["4100"].id, tenant_id=TENANT, company_id=COMPANY
        )
        assert cash == Decimal("100")
        assert revenue == Decimal("-100")

    async def test_drafts_do_not_affect_balances(self, db, ledger):
        await create_journal_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(1),
            description="Draft only",
            lines=[dr(ledger["1110"], 100), cr(ledger["4100"], 100)],
        )
        cash = await get_account_balance(
            db, ledger["1110"].id, tenant_id=TENANT, company_id=COMPANY
        )
        assert cash == Decimal("0")


class TestReversal:

    async def _posted_sale(self, db, ledger, amount=250):
        return await create_and_post_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(2),
            description="Sale",
            reference="REF-1",
            lines=[dr(ledger["1110"], amount), cr(ledger["4100"], amount)],
        )

    async def test_reversal_mirrors_lines(self, db, ledger):
        original = await self._posted_sale(db, ledger)
        reversal = await reverse_entry(
            db, original.id, tenant_id=TENANT, reversal_date=d(3), user_id=9
        )

        assert reversal.status == JournalEntryStatus.POSTED
        assert reversal.entry_type == JournalEntryType.ADJUSTMENT
        assert reversal.reversal_of_id == original.id
        assert reversal.reference == original.entry_number
        assert len(reversal.lines) == len(original.lines)
        for orig_ln, rev_ln in zip(original.lines, reversal.lines):
            assert rev_ln.account_id == orig_ln.account_id
            assert rev_ln.debit == orig_ln.credit
            assert rev_ln.credit == orig_ln.debit
            assert rev_ln.description == f"Reversal of {original.entry_number}"

        reloaded = await get_journal_entry(db, original.id, tenant_id=TENANT)
        assert reloaded.status == JournalEntryStatus.REVERSED
        assert reloaded.reversing_entry_id == reversal.id
        assert reloaded.reversed_by == 9
        assert reloaded.reversed_at is not None

    async def test_reversal_nets_balances_to_zero(self, db, ledger):
        original = await self._posted_sale(db, ledger)
        await reverse_entry(db, original.id, tenant_id=TENANT, reversal_date=d(3))

        for code in ("1110", "4100"):
            balance = await get_account_balance(
                db, ledger[code].id, tenant_id=TENANT, company_id=COMPANY
            )
            assert balance == Decimal("0")

        # Between the two dates the original is still in force.
        cash_mid = await get_account_balance(
            db, ledger["1110"].id, tenant_id=TENANT, company_id=COMPANY, as_of=d(2, 28)
        )
        assert cash_mid == Decimal("250")

    async def test_double_reversal_rejected(self, db, ledger):
        original = await self._posted_sale(db, ledger)
        await reverse_entry(db, original.id, tenant_id=TENANT, reversal_date=d(3))
        with pytest.raises(StatusTransitionError):
            await reverse_entry(db, original.id, tenant_id=TENANT, reversal_date=d(3))

    async def test_reversal_into_closed_period_rejected(self, db, ledger, periods):
        original = await self._posted_sale(db, ledger)
        may = next(p for p in periods if p.name == "May 2026")
        await close_period(db, may.id, tenant_id=TENANT)

        with pytest.raises(PeriodClosedError, match="reversal"):
            await reverse_entry(db, original.id, tenant_id=TENANT, reversal_date=d(5))

        reloaded = await get_journal_entry(db, original.id, tenant_id=TENANT)
        assert reloaded.status == JournalEntryStatus.POSTED
        assert reloaded.reversing_entry_id is None

    async def test_list_filters(self, db, ledger):
        original = await self._posted_sale(db, ledger)
        await reverse_entry(db, original.id, tenant_id=TENANT, reversal_date=d(3))
        await create_journal_entry(
            db,
            tenant_id=TENANT,
            company_id=COMPANY,
            entry_date=d(4),
            description="Rent draft",
            lines=[dr(ledger["6200"], 80), cr(ledger["1120"], 80)],
        )

        reversed_entries = await list_journal_entries(
            db, tenant_id=TENANT, company_id=COMPANY, status=JournalEntryStatus.REVERSED
        )
        assert [e.id for e in reversed_entries] == [original.id]

        adjustments = await list_journal_entries(
            db, tenant_id=TENANT, company_id=COMPANY, entry_type=JournalEntryType.ADJUSTMENT
        )
        assert len(adjustments) == 1

        touching_rent = await list_journal_entries(
            db, tenant_id=TENANT, company_id=COMPANY, account_id=ledger["6200"].id
        )
        assert [e.description for e in touching_rent] == ["Rent draft"]

        newest_first = await list_journal_entries(db, tenant_id=TENANT, company_id=COMPANY)
        assert [e.entry_date for e in newest_first] == [d(4), d(3), d(2)]
