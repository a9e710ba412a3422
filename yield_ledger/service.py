"""Ledger service: the operations exposed to the API layer and scripts."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Mapping, Protocol

from yield_ledger.config import LedgerConfig
from yield_ledger.engine.accrual import (
    AccrualRun,
    LoanAccrualScheduler,
    YieldAccrualScheduler,
    credit_entry,
    next_boundary,
)
from yield_ledger.engine.allocation import Replay, replay
from yield_ledger.engine.projection import monthly_history, project
from yield_ledger.engine.reconciler import ImportReconciler, ReconcileResult
from yield_ledger.exceptions import (
    InvalidAmountError,
    InvalidEntityStateError,
    LedgerError,
    ValidationError,
)
from yield_ledger.logging import get_logger
from yield_ledger.models import Event
from yield_ledger.models.ledger import (
    AccountIdentity,
    AccrualEvent,
    DepositStatus,
    LoanAccount,
    MonthlyBalance,
    Projection,
    YieldDeposit,
)
from yield_ledger.money import ZERO, parse_amount, round_money, to_decimal
from yield_ledger.store.base import AccountDirectory, LedgerRepository

logger = get_logger(__name__)

EVENT_SOURCE = "yield-ledger"


class EventSink(Protocol):
    def publish(self, topic: str, event: Any) -> None:
        ...


@dataclass
class PayoutReport:
    """Outcome of a payout run over all active yield deposits."""

    as_of: date
    dry_run: bool
    events: list[AccrualEvent] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)  # (deposit_id, reason)
    deposits_processed: int = 0

    @property
    def total(self) -> Decimal:
        total = ZERO
        for event in self.events:
            total += event.amount
        return total


class LedgerService:
    """Entry point wiring the store, engine and event sink together.

    Parameters
    ----------
    store : LedgerRepository
        Persistence collaborator.
    directory : AccountDirectory | None
        Account resolution; defaults to ``store`` when it implements both.
    config : LedgerConfig | None
        Import, accrual and Kafka topic settings.
    sink : EventSink | None
        Where committed changes are published. ``None`` disables publishing.
    """

    def __init__(
        self,
        store: LedgerRepository,
        directory: AccountDirectory | None = None,
        config: LedgerConfig | None = None,
        sink: EventSink | None = None,
    ) -> None:
        self.store = store
        self.directory = directory if directory is not None else store
        self.config = config or LedgerConfig()
        self.sink = sink
        self.reconciler = ImportReconciler(
            store, self.directory, self.config.imports, self.config.accrual
        )
        self.yield_scheduler = YieldAccrualScheduler(self.config.accrual)
        self.loan_scheduler = LoanAccrualScheduler(self.config.accrual)

    def _publish(self, topic_name: str, event_type: str, subject: str, data: dict) -> None:
        if self.sink is None:
            return
        event = Event(
            event_id=uuid.uuid4().hex,
            event_type=event_type,
            event_time=datetime.now(),
            source=EVENT_SOURCE,
            subject=subject,
            data=data,
        )
        self.sink.publish(self.config.kafka.topic(topic_name), event)

    # Accounts and imports

    def open_account(
        self,
        identity: AccountIdentity,
        principal: Decimal | str | int = ZERO,
        monthly_rate: Decimal | None = None,
        opened_on: date | None = None,
    ) -> LoanAccount:
        """Explicitly create a loan account with an optional opening principal."""
        account = self.directory.build_account(identity)
        amount = round_money(to_decimal(principal))
        if amount < 0:
            raise InvalidAmountError(f"Opening principal must not be negative, got {principal}")
        account.principal_amount = amount
        account.current_balance = amount
        account.opened_on = opened_on
        if monthly_rate is not None:
            account.monthly_rate = monthly_rate
        self.directory.add_account(account)
        return account

    def reconcile_import(
        self,
        account_key: str,
        source_identity: str,
        rows: Iterable[Mapping[str, Any]],
        as_of: date,
        tags: Iterable[str] = (),
    ) -> ReconcileResult:
        """Replace (or add) the upload of one source on one account."""
        result = self.reconciler.reconcile(account_key, source_identity, rows, as_of, tags)
        self._publish(
            "import-batches",
            "import_batch.committed",
            result.account_id,
            {
                "batch_id": result.batch_id,
                "replaced_batch_id": result.replaced_batch_id,
                "source_identity": source_identity.strip(),
                "added": result.added,
                "removed": result.removed,
                "new_balance": result.new_balance,
                "pending_yield": result.pending_yield,
            },
        )
        return result

    def project_ledger(self, account_id: str, as_of: date | None = None) -> Projection:
        """Current (or as-of) summary of an account, read without locking."""
        account = self.store.get_account(account_id)
        snapshot = self.store.snapshot(account_id)
        return project(account_id, snapshot.entries, account.principal_amount, as_of)

    def monthly_history(self, account_id: str, as_of: date | None = None) -> list[MonthlyBalance]:
        """Month-end balance snapshots of an account, read without locking."""
        account = self.store.get_account(account_id)
        snapshot = self.store.snapshot(account_id)
        return monthly_history(snapshot.entries, account.principal_amount, as_of)

    def replay_account(self, account_id: str, as_of: date | None = None) -> Replay:
        """Balance trajectory and lot attribution of an account."""
        account = self.store.get_account(account_id)
        snapshot = self.store.snapshot(account_id)
        until = as_of + timedelta(days=1) if as_of is not None else None
        return replay(
            snapshot.entries,
            opening_balance=account.principal_amount,
            opened_on=account.opened_on,
            until=until,
        )

    # Yield deposits

    def open_yield_deposit(
        self,
        account_id: str,
        principal: Any,
        start_date: date,
        annual_yield_rate: Decimal | None = None,
        end_date: date | None = None,
        notes: str = "",
    ) -> YieldDeposit:
        """Create an active yield deposit paying into an account."""
        self.store.get_account(account_id)
        amount = parse_amount(principal)
        rate = annual_yield_rate
        if rate is None:
            rate = self.config.accrual.default_annual_yield_rate
        if rate < 0:
            raise ValidationError(
                f"Annual yield rate must not be negative, got {rate}", field="annual_yield_rate"
            )
        if end_date is not None and end_date <= start_date:
            raise ValidationError("End date must be after start date", field="end_date")

        deposit = YieldDeposit(
            deposit_id=uuid.uuid4().hex,
            account_id=account_id,
            principal_amount=amount,
            annual_yield_rate=rate,
            start_date=start_date,
            status=DepositStatus.ACTIVE,
            end_date=end_date,
            next_payment_date=next_boundary(start_date, self.config.accrual.period_months, start_date),
            created_at=datetime.now(),
            notes=notes,
        )
        self.store.save_yield_deposit(deposit)
        logger.info(
            "Opened yield deposit %s of %s at %s on account %s",
            deposit.deposit_id, amount, rate, account_id,
            extra={"account_id": account_id, "deposit_id": deposit.deposit_id},
        )
        return deposit

    def _credits_for(self, account_id: str, events: list[AccrualEvent]) -> list:
        sequence = self.store.snapshot(account_id).next_sequence
        return [credit_entry(event, sequence + i) for i, event in enumerate(events)]

    def preview_accrual(self, deposit_id: str, as_of: date) -> AccrualRun:
        """Events and credits that ``apply_accrual`` would produce, unapplied."""
        deposit = self.store.get_yield_deposit(deposit_id)
        events = self.yield_scheduler.due_events(
            deposit, as_of, self.store.applied_period_keys(deposit_id)
        )
        return AccrualRun(
            events=events,
            credits=self._credits_for(deposit.account_id, events),
            through=events[-1].period_end if events else None,
        )

    def apply_accrual(self, deposit_id: str, as_of: date) -> list[AccrualEvent]:
        """Credit every unpaid period of a yield deposit up to ``as_of``.

        Returns only events applied by this call; running it again for the
        same date returns an empty list.
        """
        account_id = self.store.get_yield_deposit(deposit_id).account_id
        with self.store.account_lock(account_id):
            deposit = self.store.get_yield_deposit(deposit_id)
            if deposit.status == DepositStatus.CLOSED:
                return []
            applied = self.store.applied_period_keys(deposit_id)
            events = self.yield_scheduler.due_events(deposit, as_of, applied)
            stored = self.store.save_accrual_events(
                account_id, events, self._credits_for(account_id, events)
            )
            self.yield_scheduler.advance(deposit, stored, as_of)
            self.store.save_yield_deposit(deposit)

        if stored:
            logger.info(
                "Paid %d period(s) on deposit %s, total paid %s",
                len(stored), deposit_id, deposit.total_paid,
                extra={
                    "account_id": account_id,
                    "deposit_id": deposit_id,
                    "period_key": stored[-1].period_key,
                },
            )
            self._publish_accrual(account_id, stored)
        return stored

    def apply_loan_accrual(self, account_id: str, as_of: date) -> list[AccrualEvent]:
        """Credit the monthly bonus of a loan account up to ``as_of``."""
        with self.store.account_lock(account_id):
            account = self.store.get_account(account_id)
            snapshot = self.store.snapshot(account_id)
            run = self.loan_scheduler.due(
                account,
                list(snapshot.entries),
                as_of,
                self.store.applied_period_keys(account_id),
                next_sequence=snapshot.next_sequence,
            )
            stored = self.store.save_accrual_events(account_id, run.events, run.credits)
            if stored:
                account = self.store.get_account(account_id)
                account.last_accrual_date = max(e.period_end for e in stored)
                if account.accrual_anchor is None:
                    account.accrual_anchor = self.loan_scheduler.anchor(
                        account, list(snapshot.entries)
                    )
                self.store.save_account(account)

        if stored:
            logger.info(
                "Credited %d bonus period(s) on account %s",
                len(stored), account.account_number,
                extra={
                    "account_id": account_id,
                    "entry_count": len(stored),
                    "period_key": stored[-1].period_key,
                },
            )
            self._publish_accrual(account_id, stored)
        return stored

    def _publish_accrual(self, account_id: str, events: list[AccrualEvent]) -> None:
        self._publish(
            "accruals",
            "accrual.applied",
            account_id,
            {"events": [_event_data(e) for e in events]},
        )

    def close_yield_deposit(self, deposit_id: str, closed_on: date) -> list[AccrualEvent]:
        """Settle what is due on a deposit and close it.

        Raises
        ------
        InvalidEntityStateError
            If the deposit is already closed.
        """
        account_id = self.store.get_yield_deposit(deposit_id).account_id
        with self.store.account_lock(account_id):
            deposit = self.store.get_yield_deposit(deposit_id)
            if deposit.status == DepositStatus.CLOSED:
                raise InvalidEntityStateError(f"Yield deposit {deposit_id} is already closed")
            applied = self.store.applied_period_keys(deposit_id)
            events = self.yield_scheduler.closing_events(deposit, closed_on, applied)
            stored = self.store.save_accrual_events(
                account_id, events, self._credits_for(account_id, events)
            )
            self.yield_scheduler.close(deposit, closed_on, stored)
            self.store.save_yield_deposit(deposit)

        logger.info(
            "Closed yield deposit %s on %s, total paid %s",
            deposit_id, closed_on, deposit.total_paid,
            extra={"account_id": account_id, "deposit_id": deposit_id},
        )
        self._publish(
            "yield-deposits",
            "yield_deposit.closed",
            account_id,
            {
                "deposit_id": deposit_id,
                "closed_on": closed_on,
                "total_paid": deposit.total_paid,
                "events": [_event_data(e) for e in stored],
            },
        )
        return stored

    def process_due_payouts(self, as_of: date, dry_run: bool = False) -> PayoutReport:
        """Apply (or preview) due accrual on every active yield deposit.

        A failing deposit is logged and reported; the others are still
        processed.
        """
        report = PayoutReport(as_of=as_of, dry_run=dry_run)
        deposits = self.store.load_yield_deposits(status=DepositStatus.ACTIVE)
        logger.info("Processing %d active yield deposit(s) as of %s", len(deposits), as_of)

        for deposit in deposits:
            try:
                if dry_run:
                    events = self.preview_accrual(deposit.deposit_id, as_of).events
                else:
                    events = self.apply_accrual(deposit.deposit_id, as_of)
            except LedgerError as e:
                logger.error(
                    "Payout failed for deposit %s: %s", deposit.deposit_id, e,
                    extra={"deposit_id": deposit.deposit_id},
                )
                report.failures.append((deposit.deposit_id, str(e)))
                continue
            report.deposits_processed += 1
            report.events.extend(events)

        logger.info(
            "Payout run %s: %d event(s), total %s, %d failure(s)",
            "previewed" if dry_run else "applied",
            len(report.events), report.total, len(report.failures),
        )
        return report


def _event_data(event: AccrualEvent) -> dict:
    return {
        "period_key": event.period_key,
        "source": event.source.value,
        "source_id": event.source_id,
        "period_start": event.period_start,
        "period_end": event.period_end,
        "principal": event.principal,
        "rate": event.rate,
        "amount": event.amount,
        "partial": event.partial,
    }
