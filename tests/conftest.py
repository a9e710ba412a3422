"""Pytest configuration and fixtures."""

from datetime import date, datetime
from decimal import Decimal
from typing import Callable

import pytest

from yield_ledger.models.ledger import AccountStatus, EntryKind, LedgerEntry, LoanAccount
from yield_ledger.service import LedgerService
from yield_ledger.store.memory import InMemoryLedgerStore

EntryFactory = Callable[..., LedgerEntry]


@pytest.fixture
def seed() -> int:
    """Fixed seed for reproducible tests."""
    return 42


@pytest.fixture
def as_of() -> date:
    """Reference import date."""
    return date(2024, 12, 31)


@pytest.fixture
def store() -> InMemoryLedgerStore:
    """Create a fresh store for each test."""
    return InMemoryLedgerStore()


@pytest.fixture
def account(store: InMemoryLedgerStore) -> LoanAccount:
    """Registered account with no opening principal."""
    acct = LoanAccount(
        account_id="acct-001",
        account_number="YL-100001",
        owner_ref="alice.johnson@example.com",
        principal_amount=Decimal("0.00"),
        current_balance=Decimal("0.00"),
        monthly_rate=Decimal("0.01"),
        status=AccountStatus.ACTIVE,
        created_at=datetime(2024, 1, 1),
    )
    store.add_account(acct)
    return acct


@pytest.fixture
def service(store: InMemoryLedgerStore) -> LedgerService:
    """Service over the in-memory store, without an event sink."""
    return LedgerService(store)


@pytest.fixture
def make_entry() -> EntryFactory:
    """Build ledger entries with compact arguments."""

    def _make(
        kind: str,
        amount: str,
        when: date,
        entry_id: str | None = None,
        sequence: int = 0,
        account_id: str = "acct-001",
        bonus_rate: str | None = None,
    ) -> LedgerEntry:
        return LedgerEntry(
            entry_id=entry_id or f"{kind.lower()}-{when.isoformat()}-{sequence}",
            account_id=account_id,
            kind=EntryKind(kind.upper()),
            amount=Decimal(amount),
            transaction_date=when,
            sequence=sequence,
            bonus_rate=Decimal(bonus_rate) if bonus_rate is not None else None,
        )

    return _make


@pytest.fixture
def make_row() -> Callable[..., dict]:
    """Build raw upload rows as produced by the spreadsheet parser."""

    def _make(
        transaction_type: str,
        amount: object,
        transaction_date: object,
        email: str = "alice.johnson@example.com",
        **extra: object,
    ) -> dict:
        data = {
            "email": email,
            "transaction_type": transaction_type,
            "amount": amount,
            "transaction_date": transaction_date,
        }
        data.update(extra)
        return data

    return _make
