"""Tests for the ledger service operations."""

import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest

from yield_ledger.exceptions import (
    AccountNotFoundError,
    ImportValidationError,
    InvalidEntityStateError,
    ValidationError,
)
from yield_ledger.models.ledger import AccountIdentity, DepositStatus, EntryKind, LoanAccount
from yield_ledger.service import LedgerService
from yield_ledger.sinks.json_file import JsonLinesSink
from yield_ledger.store.memory import InMemoryLedgerStore

EMAIL = "alice.johnson@example.com"


@pytest.fixture
def sink() -> MagicMock:
    """Event sink double."""
    return MagicMock()


@pytest.fixture
def published_service(store: InMemoryLedgerStore, sink: MagicMock) -> LedgerService:
    """Service publishing to a mock sink."""
    return LedgerService(store, sink=sink)


@pytest.fixture
def opened(service: LedgerService) -> LoanAccount:
    """Explicitly opened account with no principal."""
    return service.open_account(AccountIdentity(email="carol.davis@example.com"))


def published(sink: MagicMock) -> list[tuple[str, str]]:
    return [(c.args[0], c.args[1].event_type) for c in sink.publish.call_args_list]


class TestAccounts:
    """Tests for explicit account creation and reads."""

    def test_open_account_with_principal(self, service: LedgerService) -> None:
        """Test opening principal counts in projection and replay."""
        account = service.open_account(
            AccountIdentity(email="bob.smith@example.com", first_name="Bob"),
            principal="10000",
            monthly_rate=Decimal("0.015"),
            opened_on=date(2024, 1, 1),
        )

        projection = service.project_ledger(account.account_id)
        assert account.monthly_rate == Decimal("0.015")
        assert projection.current_balance == Decimal("10000.00")
        assert projection.entry_count == 0
        assert service.replay_account(account.account_id).final_balance == Decimal("10000.00")

    def test_open_account_twice_fails(self, service: LedgerService) -> None:
        """Test an identity can only be registered once."""
        service.open_account(AccountIdentity(email=EMAIL))

        with pytest.raises(InvalidEntityStateError):
            service.open_account(AccountIdentity(email=EMAIL))

    def test_project_unknown_account(self, service: LedgerService) -> None:
        """Test projecting an unknown account fails."""
        with pytest.raises(AccountNotFoundError):
            service.project_ledger("missing")


class TestImports:
    """Tests for reconciliation through the service."""

    def test_publishes_committed_batch(
        self,
        published_service: LedgerService,
        sink: MagicMock,
        make_row: Callable[..., dict],
    ) -> None:
        """Test a committed import emits one event on the import topic."""
        result = published_service.reconcile_import(
            EMAIL, " sheet.xlsx ", [make_row("deposit", 100, "2024-01-01")], date(2024, 6, 30)
        )

        assert published(sink) == [("ledger.import-batches", "import_batch.committed")]
        event = sink.publish.call_args.args[1]
        assert event.subject == result.account_id
        assert event.data["source_identity"] == "sheet.xlsx"
        assert event.data["new_balance"] == Decimal("100.00")

    def test_rejected_import_publishes_nothing(
        self,
        published_service: LedgerService,
        sink: MagicMock,
        make_row: Callable[..., dict],
    ) -> None:
        """Test nothing is published for a rejected batch."""
        with pytest.raises(ImportValidationError):
            published_service.reconcile_import(
                EMAIL, "sheet.xlsx", [make_row("deposit", 100, "someday")], date(2024, 6, 30)
            )

        sink.publish.assert_not_called()

    def test_pending_yield_reported(
        self,
        service: LedgerService,
        make_row: Callable[..., dict],
    ) -> None:
        """Test the result reports bonus that would accrue on the new entries."""
        rows = [
            make_row("deposit", 1000, "2024-01-10", bonus_rate="2%"),
            make_row("deposit", 500, "2024-01-20"),
        ]

        result = service.reconcile_import(EMAIL, "sheet.xlsx", rows, date(2024, 3, 10))

        assert result.pending_yield == Decimal("50.00")


class TestYieldDeposits:
    """Tests for yield deposit accrual and closing."""

    def test_apply_accrual_credits_account_once(
        self,
        service: LedgerService,
        store: InMemoryLedgerStore,
        opened: LoanAccount,
    ) -> None:
        """Test due periods are credited once, however often accrual runs."""
        deposit = service.open_yield_deposit(opened.account_id, "10000", date(2024, 1, 15))

        first = service.apply_accrual(deposit.deposit_id, date(2024, 3, 20))
        second = service.apply_accrual(deposit.deposit_id, date(2024, 3, 20))

        stored = store.get_yield_deposit(deposit.deposit_id)
        projection = service.project_ledger(opened.account_id)
        assert len(first) == 2
        assert second == []
        assert stored.total_paid == Decimal("200.00")
        assert stored.next_payment_date == date(2024, 4, 15)
        assert projection.total_yield_paid == Decimal("200.00")
        assert projection.current_balance == Decimal("200.00")
        assert opened.current_balance == Decimal("200.00")

    def test_projection_matches_replay_after_accrual(
        self,
        service: LedgerService,
        opened: LoanAccount,
    ) -> None:
        """Test projection and replay agree once yield is credited."""
        deposit = service.open_yield_deposit(opened.account_id, "2500", date(2024, 1, 31))
        service.apply_accrual(deposit.deposit_id, date(2024, 12, 31))

        projection = service.project_ledger(opened.account_id)

        assert projection.current_balance == service.replay_account(opened.account_id).final_balance
        assert projection.total_yield_paid == Decimal("275.00")

    def test_preview_does_not_write(
        self,
        service: LedgerService,
        store: InMemoryLedgerStore,
        opened: LoanAccount,
    ) -> None:
        """Test previewing accrual changes nothing."""
        deposit = service.open_yield_deposit(opened.account_id, "10000", date(2024, 1, 15))

        run = service.preview_accrual(deposit.deposit_id, date(2024, 3, 20))

        assert run.total == Decimal("200.00")
        assert run.through == date(2024, 3, 15)
        assert [c.kind for c in run.credits] == [EntryKind.BONUS, EntryKind.BONUS]
        assert store.accrual_events == {}
        assert store.get_yield_deposit(deposit.deposit_id).total_paid == Decimal("0.00")

    def test_close_settles_and_freezes(
        self,
        published_service: LedgerService,
        sink: MagicMock,
    ) -> None:
        """Test closing pays due periods, then no further accrual happens."""
        account = published_service.open_account(AccountIdentity(email=EMAIL))
        deposit = published_service.open_yield_deposit(account.account_id, "10000", date(2024, 1, 15))

        events = published_service.close_yield_deposit(deposit.deposit_id, date(2024, 3, 20))
        later = published_service.apply_accrual(deposit.deposit_id, date(2024, 12, 31))

        assert len(events) == 2
        assert later == []
        assert deposit.status == DepositStatus.CLOSED
        assert ("ledger.yield-deposits", "yield_deposit.closed") in published(sink)
        with pytest.raises(InvalidEntityStateError, match="already closed"):
            published_service.close_yield_deposit(deposit.deposit_id, date(2024, 4, 1))

    def test_open_validation(self, service: LedgerService, opened: LoanAccount) -> None:
        """Test bad deposit parameters are rejected."""
        with pytest.raises(ValidationError, match="End date"):
            service.open_yield_deposit(
                opened.account_id, "100", date(2024, 1, 1), end_date=date(2023, 12, 31)
            )
        with pytest.raises(AccountNotFoundError):
            service.open_yield_deposit("missing", "100", date(2024, 1, 1))

    def test_process_due_payouts(
        self,
        service: LedgerService,
        store: InMemoryLedgerStore,
        opened: LoanAccount,
    ) -> None:
        """Test a dry run previews and a real run pays every active deposit."""
        for start in (date(2024, 1, 15), date(2024, 2, 1)):
            service.open_yield_deposit(opened.account_id, "10000", start)

        preview = service.process_due_payouts(date(2024, 3, 20), dry_run=True)
        assert store.accrual_events == {}

        report = service.process_due_payouts(date(2024, 3, 20))

        assert len(preview.events) == len(report.events) == 3
        assert report.total == Decimal("300.00")
        assert report.deposits_processed == 2
        assert report.failures == []
        assert service.process_due_payouts(date(2024, 3, 20)).events == []


class TestLoanAccrual:
    """Tests for monthly bonus on loan accounts."""

    def test_apply_loan_accrual(
        self,
        published_service: LedgerService,
        store: InMemoryLedgerStore,
        sink: MagicMock,
        make_row: Callable[..., dict],
    ) -> None:
        """Test bonus is credited per period and survives a re-import."""
        rows = [
            make_row("deposit", 1000, "2024-01-10", bonus_rate="2%"),
            make_row("deposit", 500, "2024-01-20"),
        ]
        imported = published_service.reconcile_import(EMAIL, "sheet.xlsx", rows, date(2024, 3, 10))

        events = published_service.apply_loan_accrual(imported.account_id, date(2024, 3, 10))
        again = published_service.apply_loan_accrual(imported.account_id, date(2024, 3, 10))
        reimported = published_service.reconcile_import(EMAIL, "sheet.xlsx", rows, date(2024, 3, 10))

        account = store.get_account(imported.account_id)
        assert [e.amount for e in events] == [Decimal("25.00"), Decimal("25.00")]
        assert again == []
        assert account.last_accrual_date == date(2024, 3, 10)
        assert reimported.new_balance == Decimal("1550.00")
        assert reimported.pending_yield == Decimal("0.00")
        assert ("ledger.accruals", "accrual.applied") in published(sink)

    def test_earlier_first_deposit_keeps_credited_periods(
        self,
        service: LedgerService,
        store: InMemoryLedgerStore,
        make_row: Callable[..., dict],
    ) -> None:
        """Test re-dating the first deposit after accrual does not shift periods."""
        imported = service.reconcile_import(
            EMAIL, "sheet.xlsx", [make_row("deposit", 1000, "2024-01-15")], date(2024, 3, 20)
        )
        first = service.apply_loan_accrual(imported.account_id, date(2024, 3, 20))
        assert store.get_account(imported.account_id).accrual_anchor == date(2024, 1, 15)

        service.reconcile_import(
            EMAIL, "sheet.xlsx", [make_row("deposit", 1000, "2024-01-05")], date(2024, 4, 20)
        )
        later = service.apply_loan_accrual(imported.account_id, date(2024, 4, 20))

        assert [e.period_end for e in first] == [date(2024, 2, 15), date(2024, 3, 15)]
        assert len(later) == 1
        assert later[0].period_start == date(2024, 3, 15)
        assert later[0].period_end == date(2024, 4, 15)
        assert later[0].amount == Decimal("10.00")
        account = store.get_account(imported.account_id)
        assert account.accrual_anchor == date(2024, 1, 15)
        assert account.last_accrual_date == date(2024, 4, 15)


class TestMonthlyHistory:
    """Tests for month-end balance snapshots."""

    def test_history_follows_reupload(
        self, service: LedgerService, make_row: Callable[..., dict]
    ) -> None:
        """Test history is folded from the active entries only."""
        rows = [
            make_row("deposit", 1000, "2024-01-10"),
            make_row("withdrawal", 200, "2024-02-15"),
        ]
        imported = service.reconcile_import(EMAIL, "sheet.xlsx", rows, date(2024, 6, 30))
        service.reconcile_import(EMAIL, "sheet.xlsx", rows[:1], date(2024, 6, 30))

        history = service.monthly_history(imported.account_id)

        assert [m.month_end for m in history] == [date(2024, 1, 31)]
        assert history[0].ending_balance == Decimal("1000.00")
        assert history[0].monthly_growth == Decimal("1000.00")

    def test_unknown_account(self, service: LedgerService) -> None:
        """Test history of a missing account raises."""
        with pytest.raises(AccountNotFoundError):
            service.monthly_history("missing")


class TestJsonLinesPublishing:
    """Tests for publishing to the JSON Lines sink."""

    def test_events_written(
        self,
        store: InMemoryLedgerStore,
        tmp_path: Path,
        make_row: Callable[..., dict],
    ) -> None:
        """Test each committed import appends one JSON line."""
        sink = JsonLinesSink(tmp_path)
        service = LedgerService(store, sink=sink)

        service.reconcile_import(
            EMAIL, "s.xlsx", [make_row("deposit", 1, "2024-01-01")], date(2024, 6, 30)
        )
        service.reconcile_import(
            EMAIL, "s.xlsx", [make_row("deposit", 2, "2024-01-01")], date(2024, 6, 30)
        )

        lines = (tmp_path / "ledger_import-batches.jsonl").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        last = json.loads(lines[-1])
        assert last["event_type"] == "import_batch.committed"
        assert last["data"]["new_balance"] == "2.00"
        assert last["data"]["removed"] == 1
