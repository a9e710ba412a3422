"""Replace-not-append reconciliation of spreadsheet uploads.

An upload is identified by ``(account, source_identity)``. Reconciling it
replaces every entry of the previous active batch for that pair with the new
rows, or adds a new batch when there is none. Work happens in two phases:

``prepare``
    Reads a snapshot of the account without locking, validates every row and
    replays the candidate entry set. Nothing is written.
``commit``
    Hands the plan to the store, which swaps the entry sets under the account
    lock only if the account version still matches the snapshot.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping

from yield_ledger.config import AccrualConfig, ImportConfig
from yield_ledger.engine.accrual import LoanAccrualScheduler
from yield_ledger.engine.allocation import Replay, replay
from yield_ledger.engine.normalizer import TransactionNormalizer
from yield_ledger.exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidEntityStateError,
    ReplacementRaceLostError,
    SourceIdentityAmbiguousError,
    ValidationError,
)
from yield_ledger.logging import get_logger
from yield_ledger.models.ledger import BatchStatus, ImportBatch, LedgerEntry, LoanAccount
from yield_ledger.money import ZERO
from yield_ledger.store.base import AccountDirectory, AccountSnapshot, LedgerRepository

logger = get_logger(__name__)


@dataclass
class ReconcilePlan:
    """Validated, uncommitted outcome of an upload."""

    account: LoanAccount
    source_identity: str
    snapshot: AccountSnapshot
    batch: ImportBatch
    new_entries: tuple[LedgerEntry, ...]
    removed_entry_ids: tuple[str, ...]
    replay: Replay
    pending_yield: Decimal
    replaced_batch: ImportBatch | None = None
    is_new_account: bool = False

    @property
    def new_balance(self) -> Decimal:
        return self.replay.final_balance


@dataclass(frozen=True)
class ReconcileResult:
    """What a committed upload changed on the account."""

    batch_id: str
    account_id: str
    replaced_batch_id: str | None
    added: int
    removed: int
    new_balance: Decimal
    pending_yield: Decimal = ZERO
    version: int = 0
    tags: frozenset[str] = field(default_factory=frozenset)

    @property
    def entry_delta(self) -> int:
        """Net change in the number of active entries."""
        return self.added - self.removed

    def summary(self) -> str:
        """Short message for the uploader, e.g. ``"2 updates replaced"``."""
        noun = "update" if self.added == 1 else "updates"
        action = "replaced" if self.replaced_batch_id else "added"
        return f"{self.added} {noun} {action}"


def _fingerprint(entries: Iterable[LedgerEntry]) -> tuple:
    """Order-independent content of a batch, ignoring ids and sequences."""
    return tuple(
        sorted(
            (e.kind.value, e.amount, e.transaction_date, e.description, e.bonus_rate or ZERO)
            for e in entries
        )
    )


def _sequences_for(count: int, replaced: Iterable[int], next_sequence: int) -> list[int]:
    """Ordering slots for the entries of an upload.

    A replacement reuses the slots of the entries it removes, in row order,
    so same-day ordering against other sources stays as it was. Rows beyond
    the replaced count get fresh slots after every existing entry.
    """
    reused = sorted(replaced)[:count]
    extra = count - len(reused)
    return reused + list(range(next_sequence, next_sequence + extra))


class ImportReconciler:
    """Reconcile uploaded rows against an account's active import batches.

    Parameters
    ----------
    store : LedgerRepository
        Committed entries, batches and the atomic batch swap.
    directory : AccountDirectory
        Resolves the account key of an upload.
    import_config : ImportConfig | None
        Normalization and account creation rules.
    accrual_config : AccrualConfig | None
        Used to report yield that would become due on the new entry set.
    """

    def __init__(
        self,
        store: LedgerRepository,
        directory: AccountDirectory,
        import_config: ImportConfig | None = None,
        accrual_config: AccrualConfig | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.import_config = import_config or ImportConfig()
        self.normalizer = TransactionNormalizer(directory, self.import_config)
        self.loan_scheduler = LoanAccrualScheduler(accrual_config)

    def _resolve(
        self,
        account_key: str,
        rows: list[Mapping[str, Any]],
    ) -> tuple[LoanAccount, bool]:
        """Find the upload's account or build an unsaved one from the rows."""
        account = self.directory.find_account(account_key)
        if account is not None:
            return account, False

        if not self.import_config.allow_account_creation or not rows:
            raise AccountNotFoundError(f"No account found for {account_key}")

        wanted = account_key.strip().lower()
        identity = None
        for row in rows:
            try:
                candidate = self.normalizer.identity_from_row(row)
            except ValidationError:
                # reported per row by normalize_rows
                continue
            keys = {k.lower() for k in (candidate.account_number, candidate.email) if k}
            if wanted in keys:
                identity = candidate
                break
        if identity is None or identity.email is None:
            raise AccountNotFoundError(
                f"No account found for {account_key} and no row carries an email to create one"
            )
        return self.directory.build_account(identity), True

    def prepare(
        self,
        account_key: str,
        source_identity: str,
        rows: Iterable[Mapping[str, Any]],
        as_of: date,
        tags: Iterable[str] = (),
    ) -> ReconcilePlan:
        """Validate an upload and compute its effect without writing.

        Raises
        ------
        SourceIdentityAmbiguousError
            If the source identity is blank, matches more than one active
            batch, or the rows duplicate another source's active batch.
        ImportValidationError
            If any row is invalid; lists every failing row.
        InsufficientFundsError
            If the new entry set overdraws the account at some point.
        """
        source = (source_identity or "").strip()
        if not source:
            raise SourceIdentityAmbiguousError("An import needs a non-empty source identity")

        raw_rows = list(rows)
        account, is_new = self._resolve(account_key, raw_rows)
        entries = self.normalizer.normalize_rows(raw_rows, as_of, account=account)

        snapshot = self.store.snapshot(account.account_id)
        active = snapshot.batches_for(source)
        if len(active) > 1:
            raise SourceIdentityAmbiguousError(
                f"{len(active)} active batches for source {source!r} on account "
                f"{account.account_number}"
            )
        replaced = active[0] if active else None

        if entries:
            fingerprint = _fingerprint(entries)
            for other in snapshot.batches:
                if other.source_identity == source:
                    continue
                ids = set(other.entry_ids)
                if _fingerprint(e for e in snapshot.entries if e.entry_id in ids) == fingerprint:
                    raise SourceIdentityAmbiguousError(
                        f"Rows are identical to active batch {other.batch_id} "
                        f"from source {other.source_identity!r}"
                    )

        removed_ids = set(replaced.entry_ids) if replaced else set()
        kept = [e for e in snapshot.entries if e.entry_id not in removed_ids]

        sequences = _sequences_for(
            len(entries),
            [e.sequence for e in snapshot.entries if e.entry_id in removed_ids],
            snapshot.next_sequence,
        )
        next_free = max([snapshot.next_sequence] + [s + 1 for s in sequences])

        batch_id = uuid.uuid4().hex
        now = datetime.now()
        tag_set = frozenset(tags)
        new_entries = tuple(
            replace(
                entry,
                import_batch_id=batch_id,
                sequence=sequence,
                tags=entry.tags | tag_set,
                created_at=now,
            )
            for entry, sequence in zip(entries, sequences)
        )
        candidate = kept + list(new_entries)

        try:
            state = replay(
                candidate,
                opening_balance=account.principal_amount,
                opened_on=account.opened_on,
            )
        except InsufficientFundsError as e:
            logger.warning(
                "Rejected upload %s for %s: %s", source, account.account_number, e,
                extra={"account_id": account.account_id, "source_identity": source},
            )
            raise

        applied = set() if is_new else self.store.applied_period_keys(account.account_id)
        pending = self.loan_scheduler.due(
            account, candidate, as_of, applied, next_sequence=next_free
        )

        batch = ImportBatch(
            batch_id=batch_id,
            account_id=account.account_id,
            source_identity=source,
            entry_ids=tuple(e.entry_id for e in new_entries),
            created_at=now,
            status=BatchStatus.ACTIVE,
            replaced_batch_id=replaced.batch_id if replaced else None,
        )
        return ReconcilePlan(
            account=account,
            source_identity=source,
            snapshot=snapshot,
            batch=batch,
            new_entries=new_entries,
            removed_entry_ids=tuple(sorted(removed_ids)),
            replay=state,
            pending_yield=pending.total,
            replaced_batch=replaced,
            is_new_account=is_new,
        )

    def commit(self, plan: ReconcilePlan) -> ReconcileResult:
        """Apply a prepared plan atomically.

        Raises
        ------
        ReplacementRaceLostError
            If another reconciliation changed the account after ``prepare``.
        """
        account = plan.account
        if plan.is_new_account:
            try:
                self.directory.add_account(account)
            except InvalidEntityStateError as e:
                raise ReplacementRaceLostError(
                    f"Account {account.account_number} was created by a concurrent import"
                ) from e

        try:
            version = self.store.commit_batch(
                account.account_id,
                plan.removed_entry_ids,
                plan.new_entries,
                plan.batch,
                expected_version=plan.snapshot.version,
                new_balance=plan.new_balance,
            )
        except ReplacementRaceLostError:
            logger.warning(
                "Lost replacement race for %s on account %s",
                plan.source_identity, account.account_number,
                extra={"account_id": account.account_id, "source_identity": plan.source_identity},
            )
            raise

        result = ReconcileResult(
            batch_id=plan.batch.batch_id,
            account_id=account.account_id,
            replaced_batch_id=plan.replaced_batch.batch_id if plan.replaced_batch else None,
            added=len(plan.new_entries),
            removed=len(plan.removed_entry_ids),
            new_balance=plan.new_balance,
            pending_yield=plan.pending_yield,
            version=version,
            tags=frozenset(t for e in plan.new_entries for t in e.tags),
        )
        logger.info(
            "Reconciled %s on account %s: %s, balance %s",
            plan.source_identity, account.account_number, result.summary(), result.new_balance,
            extra={
                "account_id": account.account_id,
                "batch_id": result.batch_id,
                "source_identity": plan.source_identity,
                "entry_count": result.added,
                "removed_count": result.removed,
                "version": result.version,
            },
        )
        return result

    def reconcile(
        self,
        account_key: str,
        source_identity: str,
        rows: Iterable[Mapping[str, Any]],
        as_of: date,
        tags: Iterable[str] = (),
    ) -> ReconcileResult:
        """Prepare and commit an upload in one call."""
        return self.commit(self.prepare(account_key, source_identity, rows, as_of, tags))
