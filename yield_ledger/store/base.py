"""Persistence collaborator contracts."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import ContextManager, Iterable, Protocol

from yield_ledger.models.ledger import (
    AccountIdentity,
    AccrualEvent,
    DepositStatus,
    ImportBatch,
    LedgerEntry,
    LoanAccount,
    YieldDeposit,
)


@dataclass(frozen=True)
class AccountSnapshot:
    """Committed state of one account at a single version.

    Readers get the entry tuple and version together, so they never observe
    a half-replaced entry set.
    """

    account_id: str
    entries: tuple[LedgerEntry, ...]
    batches: tuple[ImportBatch, ...]  # active batches only
    version: int
    next_sequence: int

    def batches_for(self, source_identity: str) -> list[ImportBatch]:
        """Active batches recorded for a source identity."""
        return [b for b in self.batches if b.source_identity == source_identity]


class LedgerRepository(Protocol):
    """Storage used by the engine. Implementations provide the atomicity."""

    def get_account(self, account_id: str) -> LoanAccount:
        ...

    def find_account(self, key: str) -> LoanAccount | None:
        ...

    def add_account(self, account: LoanAccount) -> None:
        ...

    def save_account(self, account: LoanAccount) -> None:
        ...

    def account_lock(self, account_id: str) -> ContextManager[None]:
        ...

    def snapshot(self, account_id: str) -> AccountSnapshot:
        ...

    def load_entries(self, account_id: str) -> list[LedgerEntry]:
        ...

    def commit_batch(
        self,
        account_id: str,
        remove_entry_ids: Iterable[str],
        add_entries: Iterable[LedgerEntry],
        new_batch: ImportBatch,
        expected_version: int,
        new_balance: Decimal,
    ) -> int:
        """Swap entry sets atomically; returns the new version."""
        ...

    def get_yield_deposit(self, deposit_id: str) -> YieldDeposit:
        ...

    def load_yield_deposits(
        self,
        account_id: str | None = None,
        status: DepositStatus | None = None,
    ) -> list[YieldDeposit]:
        ...

    def save_yield_deposit(self, deposit: YieldDeposit) -> None:
        ...

    def save_accrual_events(
        self,
        account_id: str,
        events: Iterable[AccrualEvent],
        credits: Iterable[LedgerEntry] = (),
    ) -> list[AccrualEvent]:
        """Store events and their credit entries; returns only new events."""
        ...

    def applied_period_keys(self, source_id: str) -> set[str]:
        ...


class AccountDirectory(Protocol):
    """Identity/account resolution collaborator."""

    def find_account(self, key: str) -> LoanAccount | None:
        ...

    def build_account(self, identity: AccountIdentity) -> LoanAccount:
        """Unsaved account for an identity."""
        ...

    def add_account(self, account: LoanAccount) -> None:
        ...

    def resolve_or_create_account(
        self,
        identity: AccountIdentity,
        allow_create: bool = False,
    ) -> LoanAccount:
        ...
