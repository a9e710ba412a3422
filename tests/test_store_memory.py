"""Tests for InMemoryLedgerStore."""

from datetime import date, datetime
from decimal import Decimal
from typing import Callable

import pytest

from yield_ledger.exceptions import (
    AccountNotFoundError,
    DepositNotFoundError,
    InvalidEntityStateError,
    ReferentialIntegrityError,
    ReplacementRaceLostError,
)
from yield_ledger.models.ledger import (
    AccountIdentity,
    AccrualEvent,
    AccrualSource,
    BatchStatus,
    DepositStatus,
    EntryKind,
    ImportBatch,
    LedgerEntry,
    LoanAccount,
    YieldDeposit,
)
from yield_ledger.store.memory import InMemoryLedgerStore

EntryFactory = Callable[..., LedgerEntry]


def make_batch(batch_id: str, entries: list[LedgerEntry], source: str = "sheet.xlsx") -> ImportBatch:
    return ImportBatch(
        batch_id=batch_id,
        account_id="acct-001",
        source_identity=source,
        entry_ids=tuple(e.entry_id for e in entries),
        created_at=datetime(2024, 6, 30),
    )


def make_event(key: str, amount: str = "10.00") -> AccrualEvent:
    return AccrualEvent(
        period_key=key,
        source=AccrualSource.YIELD_DEPOSIT,
        source_id="dep-001",
        account_id="acct-001",
        period_start=date(2024, 1, 15),
        period_end=date(2024, 2, 15),
        principal=Decimal("1000.00"),
        rate=Decimal("0.01"),
        amount=Decimal(amount),
    )


class TestAccounts:
    """Tests for account registration and lookup."""

    def test_find_by_number_and_email(self, store: InMemoryLedgerStore, account: LoanAccount) -> None:
        """Test lookup by account number or case-insensitive email."""
        assert store.find_account("YL-100001") is account
        assert store.find_account("Alice.Johnson@Example.com") is account
        assert store.find_account("nobody@example.com") is None

    def test_duplicate_key_rejected(self, store: InMemoryLedgerStore, account: LoanAccount) -> None:
        """Test an email can only belong to one account."""
        duplicate = store.build_account(AccountIdentity(email=account.owner_ref))

        with pytest.raises(InvalidEntityStateError):
            store.add_account(duplicate)

    def test_build_account_numbers(self, store: InMemoryLedgerStore) -> None:
        """Test generated account numbers are sequential and unsaved."""
        first = store.build_account(AccountIdentity(email="a@example.com"))
        second = store.build_account(AccountIdentity(email="b@example.com"))

        assert (first.account_number, second.account_number) == ("YL-000001", "YL-000002")
        assert store.accounts == {}

    def test_resolve_or_create(self, store: InMemoryLedgerStore) -> None:
        """Test creation only happens when allowed."""
        identity = AccountIdentity(email="new@example.com", first_name="New")

        with pytest.raises(AccountNotFoundError):
            store.resolve_or_create_account(identity)
        created = store.resolve_or_create_account(identity, allow_create=True)

        assert store.resolve_or_create_account(identity) is created
        assert created.first_name == "New"

    def test_lock_unknown_account(self, store: InMemoryLedgerStore) -> None:
        """Test locking an unknown account fails."""
        with pytest.raises(AccountNotFoundError):
            with store.account_lock("missing"):
                pass


class TestCommitBatch:
    """Tests for atomic entry set replacement."""

    def test_commit_and_replace(
        self,
        store: InMemoryLedgerStore,
        account: LoanAccount,
        make_entry: EntryFactory,
    ) -> None:
        """Test a replacement supersedes the old batch and keeps removed entries."""
        old = [make_entry("deposit", "100.00", date(2024, 1, 1), entry_id="e1", sequence=1)]
        new = [make_entry("deposit", "150.00", date(2024, 1, 1), entry_id="e2", sequence=2)]

        v1 = store.commit_batch("acct-001", [], old, make_batch("b1", old), 0, Decimal("100.00"))
        v2 = store.commit_batch("acct-001", ["e1"], new, make_batch("b2", new), v1, Decimal("150.00"))

        snapshot = store.snapshot("acct-001")
        assert (v1, v2) == (1, 2)
        assert [e.entry_id for e in snapshot.entries] == ["e2"]
        assert [b.batch_id for b in snapshot.batches] == ["b2"]
        assert snapshot.next_sequence == 3
        assert store.get_batch("b1").status == BatchStatus.SUPERSEDED
        assert store.get_batch("b1").superseded_at is not None
        assert store.removed_entries["e1"][1] == "b2"
        assert account.current_balance == Decimal("150.00")

    def test_snapshot_is_not_affected_by_later_commits(
        self,
        store: InMemoryLedgerStore,
        account: LoanAccount,
        make_entry: EntryFactory,
    ) -> None:
        """Test a reader's snapshot never changes under it."""
        entries = [make_entry("deposit", "100.00", date(2024, 1, 1), entry_id="e1")]
        before = store.snapshot("acct-001")

        store.commit_batch("acct-001", [], entries, make_batch("b1", entries), 0, Decimal("100.00"))

        assert before.entries == ()
        assert before.version == 0
        assert len(store.snapshot("acct-001").entries) == 1

    def test_stale_version_rejected(
        self,
        store: InMemoryLedgerStore,
        account: LoanAccount,
        make_entry: EntryFactory,
    ) -> None:
        """Test a commit against an outdated version changes nothing."""
        entries = [make_entry("deposit", "100.00", date(2024, 1, 1), entry_id="e1")]
        store.commit_batch("acct-001", [], entries, make_batch("b1", entries), 0, Decimal("100.00"))

        with pytest.raises(ReplacementRaceLostError):
            store.commit_batch("acct-001", ["e1"], [], make_batch("b2", []), 0, Decimal("0.00"))

        assert store.get_batch("b1").status == BatchStatus.ACTIVE
        assert len(store.load_entries("acct-001")) == 1

    def test_entry_for_other_account_rejected(
        self,
        store: InMemoryLedgerStore,
        account: LoanAccount,
        make_entry: EntryFactory,
    ) -> None:
        """Test entries must belong to the committing account."""
        entries = [make_entry("deposit", "1.00", date(2024, 1, 1), account_id="acct-999")]

        with pytest.raises(ReferentialIntegrityError):
            store.commit_batch("acct-001", [], entries, make_batch("b1", entries), 0, Decimal("1.00"))


class TestAccrualStorage:
    """Tests for yield deposits and accrual events."""

    def test_save_accrual_events_deduplicates(
        self, store: InMemoryLedgerStore, account: LoanAccount
    ) -> None:
        """Test an already stored period key is skipped with its credit."""
        credit = LedgerEntry(
            entry_id="c1",
            account_id="acct-001",
            kind=EntryKind.BONUS,
            amount=Decimal("10.00"),
            transaction_date=date(2024, 2, 15),
            sequence=5,
            accrual_key="k1",
        )

        first = store.save_accrual_events("acct-001", [make_event("k1")], [credit])
        second = store.save_accrual_events("acct-001", [make_event("k1")], [credit])

        assert len(first) == 1
        assert second == []
        assert account.current_balance == Decimal("10.00")
        assert store.applied_period_keys("dep-001") == {"k1"}
        assert store.snapshot("acct-001").next_sequence == 6
        assert len(store.load_entries("acct-001")) == 1

    def test_yield_deposits(self, store: InMemoryLedgerStore, account: LoanAccount) -> None:
        """Test deposit storage, filtering and missing ids."""
        for i, status in enumerate([DepositStatus.ACTIVE, DepositStatus.CLOSED]):
            store.save_yield_deposit(
                YieldDeposit(
                    deposit_id=f"dep-{i}",
                    account_id="acct-001",
                    principal_amount=Decimal("100.00"),
                    annual_yield_rate=Decimal("0.12"),
                    start_date=date(2024, 1, 1 + i),
                    status=status,
                )
            )

        assert [d.deposit_id for d in store.load_yield_deposits("acct-001")] == ["dep-0", "dep-1"]
        assert [d.deposit_id for d in store.load_yield_deposits(status=DepositStatus.CLOSED)] == [
            "dep-1"
        ]
        assert store.get_yield_deposit("dep-0").created_at is not None
        with pytest.raises(DepositNotFoundError):
            store.get_yield_deposit("dep-9")

    def test_deposit_for_unknown_account(self, store: InMemoryLedgerStore) -> None:
        """Test deposits must reference an existing account."""
        deposit = YieldDeposit(
            deposit_id="dep-0",
            account_id="missing",
            principal_amount=Decimal("100.00"),
            annual_yield_rate=Decimal("0.12"),
            start_date=date(2024, 1, 1),
            status=DepositStatus.ACTIVE,
        )

        with pytest.raises(ReferentialIntegrityError):
            store.save_yield_deposit(deposit)

    def test_summary(self, store: InMemoryLedgerStore, account: LoanAccount) -> None:
        """Test summary counts."""
        summary = store.summary()

        assert summary["accounts"] == 1
        assert summary["entries"] == 0
        assert summary["accrual_events"] == 0
