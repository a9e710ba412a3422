"""In-memory ledger store with per-account write serialization."""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Iterator

from yield_ledger.exceptions import (
    AccountNotFoundError,
    DepositNotFoundError,
    InvalidEntityStateError,
    ReferentialIntegrityError,
    ReplacementRaceLostError,
)
from yield_ledger.logging import get_logger
from yield_ledger.models.ledger import (
    AccountIdentity,
    AccountStatus,
    AccrualEvent,
    BatchStatus,
    DepositStatus,
    ImportBatch,
    LedgerEntry,
    LoanAccount,
    YieldDeposit,
)
from yield_ledger.money import ZERO
from yield_ledger.store.base import AccountSnapshot

logger = get_logger(__name__)


@dataclass(frozen=True)
class _AccountState:
    """Committed entry set of one account; swapped as a whole on commit."""

    entries: tuple[LedgerEntry, ...] = ()
    version: int = 0
    next_sequence: int = 1


@dataclass
class InMemoryLedgerStore:
    """In-memory store for ledger entities with relationship tracking.

    Writers on one account are serialized by that account's re-entrant lock;
    writers on different accounts never contend. Readers take no lock: each
    account's committed entries live in one immutable ``_AccountState`` that
    a commit replaces in a single assignment.
    """

    default_monthly_rate: Decimal = Decimal("0.01")

    # Primary entities
    accounts: dict[str, LoanAccount] = field(default_factory=dict)
    batches: dict[str, ImportBatch] = field(default_factory=dict)
    yield_deposits: dict[str, YieldDeposit] = field(default_factory=dict)
    accrual_events: dict[str, AccrualEvent] = field(default_factory=dict)

    # Entries taken out by a batch replacement, kept for audit
    removed_entries: dict[str, tuple[LedgerEntry, str]] = field(default_factory=dict)

    # Relationship indexes
    _states: dict[str, _AccountState] = field(default_factory=dict)
    _account_keys: dict[str, str] = field(default_factory=dict)
    _account_batches: dict[str, list[str]] = field(default_factory=dict)
    _account_deposits: dict[str, list[str]] = field(default_factory=dict)
    _source_events: dict[str, set[str]] = field(default_factory=dict)

    _locks: dict[str, threading.RLock] = field(default_factory=dict)
    _registry_lock: threading.Lock = field(default_factory=threading.Lock)
    _account_counter: int = 0

    # Accounts

    def add_account(self, account: LoanAccount) -> None:
        """Add an account to the store."""
        with self._registry_lock:
            keys = [account.account_number]
            if account.owner_ref:
                keys.append(account.owner_ref.lower())
            for key in keys:
                if key in self._account_keys:
                    raise InvalidEntityStateError(f"Account key {key} already registered")
            self.accounts[account.account_id] = account
            for key in keys:
                self._account_keys[key] = account.account_id
            self._states[account.account_id] = _AccountState()
            self._account_batches[account.account_id] = []
            self._account_deposits[account.account_id] = []
            self._locks[account.account_id] = threading.RLock()
        logger.info("Account %s created for %s", account.account_number, account.owner_ref)

    def get_account(self, account_id: str) -> LoanAccount:
        """Get an account by id."""
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def find_account(self, key: str) -> LoanAccount | None:
        """Find an account by account number or owner email."""
        account_id = self._account_keys.get(key) or self._account_keys.get(key.lower())
        return self.accounts.get(account_id) if account_id else None

    def save_account(self, account: LoanAccount) -> None:
        """Persist changes to an existing account."""
        if account.account_id not in self.accounts:
            raise AccountNotFoundError(f"Account {account.account_id} not found")
        account.updated_at = datetime.now()
        self.accounts[account.account_id] = account

    def build_account(self, identity: AccountIdentity) -> LoanAccount:
        """Create an unsaved account for an import identity."""
        with self._registry_lock:
            self._account_counter += 1
            number = identity.account_number or f"YL-{self._account_counter:06d}"
        return LoanAccount(
            account_id=uuid.uuid4().hex,
            account_number=number,
            owner_ref=identity.email,
            principal_amount=ZERO,
            current_balance=ZERO,
            monthly_rate=self.default_monthly_rate,
            status=AccountStatus.ACTIVE,
            created_at=datetime.now(),
            first_name=identity.first_name,
            last_name=identity.last_name,
            phone=identity.phone,
        )

    def resolve_or_create_account(
        self,
        identity: AccountIdentity,
        allow_create: bool = False,
    ) -> LoanAccount:
        """Resolve an identity to an account, creating it when allowed."""
        account = None
        if identity.account_number:
            account = self.find_account(identity.account_number)
        if account is None and identity.email:
            account = self.find_account(identity.email)
        if account is not None:
            return account
        if not allow_create or not identity.email:
            raise AccountNotFoundError(f"No account found for {identity.key}")
        account = self.build_account(identity)
        self.add_account(account)
        return account

    @contextmanager
    def account_lock(self, account_id: str) -> Iterator[None]:
        """Hold the exclusive writer lock of one account."""
        lock = self._locks.get(account_id)
        if lock is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        with lock:
            yield

    # Entries and batches

    def snapshot(self, account_id: str) -> AccountSnapshot:
        """Committed entries, active batches and version of an account."""
        state = self._states.get(account_id, _AccountState())
        batches = tuple(
            self.batches[bid]
            for bid in self._account_batches.get(account_id, [])
            if self.batches[bid].status == BatchStatus.ACTIVE
        )
        return AccountSnapshot(
            account_id=account_id,
            entries=state.entries,
            batches=batches,
            version=state.version,
            next_sequence=state.next_sequence,
        )

    def load_entries(self, account_id: str) -> list[LedgerEntry]:
        """Get all active entries for an account."""
        return list(self._states.get(account_id, _AccountState()).entries)

    def commit_batch(
        self,
        account_id: str,
        remove_entry_ids: Iterable[str],
        add_entries: Iterable[LedgerEntry],
        new_batch: ImportBatch,
        expected_version: int,
        new_balance: Decimal,
    ) -> int:
        """Replace entries and activate a batch in one step.

        Raises
        ------
        ReplacementRaceLostError
            If the account changed since ``expected_version`` was read.
        """
        account = self.get_account(account_id)
        remove_ids = set(remove_entry_ids)
        added = list(add_entries)

        with self.account_lock(account_id):
            state = self._states[account_id]
            if state.version != expected_version:
                raise ReplacementRaceLostError(
                    f"Account {account_id} moved from version {expected_version} "
                    f"to {state.version} during reconciliation"
                )

            for entry in added:
                if entry.account_id != account_id:
                    raise ReferentialIntegrityError(
                        f"Entry {entry.entry_id} belongs to account {entry.account_id}"
                    )

            now = datetime.now()
            for batch_id in self._account_batches[account_id]:
                batch = self.batches[batch_id]
                if (
                    batch.status == BatchStatus.ACTIVE
                    and batch.source_identity == new_batch.source_identity
                ):
                    batch.status = BatchStatus.SUPERSEDED
                    batch.superseded_at = now

            kept = []
            for entry in state.entries:
                if entry.entry_id in remove_ids:
                    self.removed_entries[entry.entry_id] = (entry, new_batch.batch_id)
                else:
                    kept.append(entry)

            next_sequence = max([state.next_sequence] + [e.sequence + 1 for e in added])
            self.batches[new_batch.batch_id] = new_batch
            self._account_batches[account_id].append(new_batch.batch_id)
            self._states[account_id] = _AccountState(
                entries=tuple(kept + added),
                version=state.version + 1,
                next_sequence=next_sequence,
            )

            account.current_balance = new_balance
            account.updated_at = now

            logger.info(
                "Committed batch %s on account %s: -%d +%d entries (version %d)",
                new_batch.batch_id, account.account_number, len(remove_ids), len(added),
                state.version + 1,
                extra={
                    "account_id": account_id,
                    "batch_id": new_batch.batch_id,
                    "entry_count": len(added),
                    "removed_count": len(remove_ids),
                    "version": state.version + 1,
                },
            )
            return state.version + 1

    def get_batch(self, batch_id: str) -> ImportBatch:
        """Get an import batch by id."""
        batch = self.batches.get(batch_id)
        if batch is None:
            raise InvalidEntityStateError(f"Batch {batch_id} not found")
        return batch

    def get_account_batches(self, account_id: str) -> list[ImportBatch]:
        """All batches of an account, superseded ones included."""
        return [self.batches[bid] for bid in self._account_batches.get(account_id, [])]

    # Yield deposits and accrual

    def add_yield_deposit(self, deposit: YieldDeposit) -> None:
        """Add a yield deposit to the store."""
        if deposit.account_id not in self.accounts:
            raise ReferentialIntegrityError(f"Account {deposit.account_id} not found")
        if deposit.created_at is None:
            deposit.created_at = datetime.now()
        self.yield_deposits[deposit.deposit_id] = deposit
        self._account_deposits[deposit.account_id].append(deposit.deposit_id)

    def get_yield_deposit(self, deposit_id: str) -> YieldDeposit:
        """Get a yield deposit by id."""
        deposit = self.yield_deposits.get(deposit_id)
        if deposit is None:
            raise DepositNotFoundError(f"Yield deposit {deposit_id} not found")
        return deposit

    def load_yield_deposits(
        self,
        account_id: str | None = None,
        status: DepositStatus | None = None,
    ) -> list[YieldDeposit]:
        """Yield deposits, optionally filtered by account and status."""
        if account_id is not None:
            ids = self._account_deposits.get(account_id, [])
            deposits = [self.yield_deposits[did] for did in ids]
        else:
            deposits = list(self.yield_deposits.values())
        if status is not None:
            deposits = [d for d in deposits if d.status == status]
        return sorted(deposits, key=lambda d: (d.start_date, d.deposit_id))

    def save_yield_deposit(self, deposit: YieldDeposit) -> None:
        """Persist deposit state."""
        if deposit.deposit_id not in self.yield_deposits:
            self.add_yield_deposit(deposit)
        else:
            self.yield_deposits[deposit.deposit_id] = deposit

    def save_accrual_events(
        self,
        account_id: str,
        events: Iterable[AccrualEvent],
        credits: Iterable[LedgerEntry] = (),
    ) -> list[AccrualEvent]:
        """Store new accrual events and credit their bonus entries.

        Events whose period key is already stored are skipped along with
        their credit entry.
        """
        account = self.get_account(account_id)
        credits_by_key = {c.accrual_key: c for c in credits}

        with self.account_lock(account_id):
            state = self._states[account_id]
            stored: list[AccrualEvent] = []
            new_entries: list[LedgerEntry] = []
            for event in events:
                if event.period_key in self.accrual_events:
                    logger.debug("Accrual %s already applied", event.period_key)
                    continue
                self.accrual_events[event.period_key] = event
                self._source_events.setdefault(event.source_id, set()).add(event.period_key)
                stored.append(event)
                credit = credits_by_key.get(event.period_key)
                if credit is not None:
                    new_entries.append(replace(credit, created_at=credit.created_at or datetime.now()))

            if not stored:
                return []

            next_sequence = max([state.next_sequence] + [e.sequence + 1 for e in new_entries])
            self._states[account_id] = _AccountState(
                entries=state.entries + tuple(new_entries),
                version=state.version + 1,
                next_sequence=next_sequence,
            )
            for entry in new_entries:
                account.current_balance += entry.amount
            account.updated_at = datetime.now()
            return stored

    def applied_period_keys(self, source_id: str) -> set[str]:
        """Period keys already applied for a deposit or account."""
        return set(self._source_events.get(source_id, set()))

    def summary(self) -> dict[str, int]:
        """Return summary counts of all entities."""
        return {
            "accounts": len(self.accounts),
            "entries": sum(len(s.entries) for s in self._states.values()),
            "removed_entries": len(self.removed_entries),
            "batches": len(self.batches),
            "yield_deposits": len(self.yield_deposits),
            "accrual_events": len(self.accrual_events),
        }
