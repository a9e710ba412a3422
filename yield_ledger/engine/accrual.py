"""Periodic yield accrual for yield deposits and loan accounts.

Accrual is computed on demand "as of" a date; nothing here runs on a timer.
Every event carries a period key built from its source and boundary date, and
both schedulers skip keys that were already applied, so re-running accrual
for the same date never credits a period twice.
"""

from __future__ import annotations

import calendar
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Collection, Iterator

from yield_ledger.config import AccrualConfig
from yield_ledger.engine.allocation import replay
from yield_ledger.logging import get_logger
from yield_ledger.models.ledger import (
    AccrualEvent,
    AccrualSource,
    AttributionPolicy,
    DepositStatus,
    EntryKind,
    LedgerEntry,
    LoanAccount,
    YieldDeposit,
)
from yield_ledger.money import ZERO, apply_rate, round_money

logger = get_logger(__name__)

RATE_PLACES = Decimal("0.00000001")


def add_months(anchor: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the month length."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def period_boundaries(
    anchor: date,
    period_months: int,
    after: date,
    until: date,
) -> Iterator[date]:
    """Yield accrual boundaries in ``(after, until]``.

    Boundaries are always computed from the anchor, never chained, so a
    deposit started on the 31st pays on the last day of short months and
    back on the 31st afterwards.
    """
    k = 1
    while True:
        boundary = add_months(anchor, k * period_months)
        if boundary > until:
            return
        if boundary > after:
            yield boundary
        k += 1


def next_boundary(anchor: date, period_months: int, after: date) -> date:
    """First boundary strictly after ``after``."""
    k = 1
    while True:
        boundary = add_months(anchor, k * period_months)
        if boundary > after:
            return boundary
        k += 1


def previous_boundary(anchor: date, period_months: int, on_or_before: date) -> date:
    """Last boundary (or the anchor itself) not after ``on_or_before``."""
    last = anchor
    k = 1
    while True:
        boundary = add_months(anchor, k * period_months)
        if boundary > on_or_before:
            return last
        last = boundary
        k += 1


def credit_entry(event: AccrualEvent, sequence: int) -> LedgerEntry:
    """Bonus ledger entry that pays an accrual event into its account."""
    if event.source == AccrualSource.YIELD_DEPOSIT:
        description = f"Yield payment for deposit {event.source_id}"
    else:
        description = "Monthly bonus"
    if event.partial:
        description += " (pro-rated)"
    return LedgerEntry(
        entry_id=uuid.uuid4().hex,
        account_id=event.account_id,
        kind=EntryKind.BONUS,
        amount=event.amount,
        transaction_date=event.period_end,
        description=description,
        sequence=sequence,
        accrual_key=event.period_key,
    )


@dataclass
class AccrualRun:
    """Events due for one source, with the bonus entries that pay them."""

    events: list[AccrualEvent] = field(default_factory=list)
    credits: list[LedgerEntry] = field(default_factory=list)
    through: date | None = None  # last boundary processed

    @property
    def total(self) -> Decimal:
        """Sum of event amounts."""
        total = ZERO
        for event in self.events:
            total += event.amount
        return total


class YieldAccrualScheduler:
    """Accrual state machine for yield deposits.

    ``ACTIVE`` deposits accrue one event per elapsed period on their fixed
    principal. Reaching ``end_date`` or an explicit close moves them to
    ``CLOSED``, after which no further events are produced.
    """

    def __init__(self, config: AccrualConfig | None = None) -> None:
        self.config = config or AccrualConfig()

    def period_rate(self, deposit: YieldDeposit) -> Decimal:
        """Rate applied per period (annual rate scaled to the period length)."""
        return deposit.annual_yield_rate * self.config.period_months / 12

    @staticmethod
    def period_key(deposit_id: str, boundary: date, partial: bool = False) -> str:
        key = f"deposit:{deposit_id}:{boundary.isoformat()}"
        return key + ":partial" if partial else key

    def due_events(
        self,
        deposit: YieldDeposit,
        as_of: date,
        applied_keys: Collection[str] = (),
    ) -> list[AccrualEvent]:
        """Events with a boundary on or before ``as_of`` not yet applied."""
        if deposit.status == DepositStatus.CLOSED:
            return []

        horizon = as_of
        if deposit.end_date is not None and deposit.end_date < horizon:
            horizon = deposit.end_date

        after = deposit.last_payment_date or deposit.start_date
        rate = self.period_rate(deposit)
        months = self.config.period_months

        events: list[AccrualEvent] = []
        for boundary in period_boundaries(deposit.start_date, months, after, horizon):
            key = self.period_key(deposit.deposit_id, boundary)
            if key in applied_keys:
                continue
            events.append(
                AccrualEvent(
                    period_key=key,
                    source=AccrualSource.YIELD_DEPOSIT,
                    source_id=deposit.deposit_id,
                    account_id=deposit.account_id,
                    period_start=previous_boundary(deposit.start_date, months, boundary - timedelta(days=1)),
                    period_end=boundary,
                    principal=deposit.principal_amount,
                    rate=rate,
                    amount=apply_rate(deposit.principal_amount, rate),
                )
            )
        return events

    def advance(
        self,
        deposit: YieldDeposit,
        events: list[AccrualEvent],
        as_of: date,
    ) -> None:
        """Record applied events on the deposit.

        ``total_paid`` only grows. The deposit closes once ``as_of`` reaches
        its ``end_date``.
        """
        for event in events:
            deposit.total_paid += event.amount
            if deposit.last_payment_date is None or event.period_end > deposit.last_payment_date:
                deposit.last_payment_date = event.period_end

        if deposit.end_date is not None and as_of >= deposit.end_date:
            deposit.status = DepositStatus.CLOSED
            logger.info("Deposit %s reached end date %s", deposit.deposit_id, deposit.end_date)
            return

        after = deposit.last_payment_date or deposit.start_date
        deposit.next_payment_date = next_boundary(
            deposit.start_date, self.config.period_months, after
        )

    def closing_events(
        self,
        deposit: YieldDeposit,
        closed_on: date,
        applied_keys: Collection[str] = (),
    ) -> list[AccrualEvent]:
        """Events settled when closing a deposit on ``closed_on``.

        Everything due on or before the close date is paid. The period in
        progress is dropped unless ``prorate_on_close`` is configured.
        """
        events = self.due_events(deposit, closed_on, applied_keys)
        if not self.config.prorate_on_close or deposit.status == DepositStatus.CLOSED:
            return events

        months = self.config.period_months
        start = previous_boundary(deposit.start_date, months, closed_on)
        end = next_boundary(deposit.start_date, months, closed_on)
        if deposit.end_date is not None and closed_on >= deposit.end_date:
            return events
        elapsed = (closed_on - start).days
        if elapsed <= 0:
            return events

        key = self.period_key(deposit.deposit_id, closed_on, partial=True)
        if key in applied_keys:
            return events

        fraction = Decimal(elapsed) / Decimal((end - start).days)
        rate = self.period_rate(deposit) * fraction
        amount = apply_rate(deposit.principal_amount, rate)
        if amount > 0:
            events.append(
                AccrualEvent(
                    period_key=key,
                    source=AccrualSource.YIELD_DEPOSIT,
                    source_id=deposit.deposit_id,
                    account_id=deposit.account_id,
                    period_start=start,
                    period_end=closed_on,
                    principal=deposit.principal_amount,
                    rate=rate.quantize(RATE_PLACES),
                    amount=amount,
                    partial=True,
                )
            )
        return events

    def close(self, deposit: YieldDeposit, closed_on: date, events: list[AccrualEvent]) -> None:
        """Apply closing events and freeze the deposit."""
        for event in events:
            deposit.total_paid += event.amount
            if event.partial:
                continue
            if deposit.last_payment_date is None or event.period_end > deposit.last_payment_date:
                deposit.last_payment_date = event.period_end
        deposit.status = DepositStatus.CLOSED
        if deposit.end_date is None or closed_on < deposit.end_date:
            deposit.end_date = closed_on


class LoanAccrualScheduler:
    """Monthly bonus accrual on a loan account's outstanding principal.

    The basis for each boundary comes from replaying the account's entries
    dated before that boundary. With ``AttributionPolicy.PER_LOT`` each open
    deposit lot accrues at its own bonus rate, falling back to the account's
    monthly rate; with ``ACCOUNT_TOTAL`` the whole outstanding principal
    accrues at the monthly rate. Credited yield lots never accrue.
    """

    def __init__(self, config: AccrualConfig | None = None) -> None:
        self.config = config or AccrualConfig()

    @staticmethod
    def period_key(account_id: str, boundary: date) -> str:
        return f"account:{account_id}:{boundary.isoformat()}"

    @staticmethod
    def anchor(account: LoanAccount, entries: list[LedgerEntry]) -> date | None:
        """Date accrual periods are counted from.

        Once a period has been credited the anchor stored on the account wins,
        so re-dating the first deposit cannot shift periods already paid.
        """
        if account.accrual_anchor is not None:
            return account.accrual_anchor
        if account.opened_on is not None:
            return account.opened_on
        dates = [e.transaction_date for e in entries if e.kind == EntryKind.DEPOSIT]
        return min(dates) if dates else None

    def due(
        self,
        account: LoanAccount,
        entries: list[LedgerEntry],
        as_of: date,
        applied_keys: Collection[str] = (),
        next_sequence: int = 0,
    ) -> AccrualRun:
        """Compute unapplied bonus events up to ``as_of`` and their credits."""
        run = AccrualRun()
        anchor = self.anchor(account, entries)
        if anchor is None:
            return run

        months = self.config.period_months
        after = account.last_accrual_date or anchor
        working = list(entries)
        sequence = next_sequence

        for boundary in period_boundaries(anchor, months, after, as_of):
            run.through = boundary
            key = self.period_key(account.account_id, boundary)
            if key in applied_keys:
                continue

            state = replay(
                working,
                opening_balance=account.principal_amount,
                opened_on=account.opened_on,
                until=boundary,
            )
            principal = state.outstanding_principal
            if principal <= 0:
                continue

            if self.config.attribution == AttributionPolicy.PER_LOT:
                raw = ZERO
                for lot in state.open_lots():
                    if lot.is_yield:
                        continue
                    lot_rate = lot.bonus_rate if lot.bonus_rate is not None else account.monthly_rate
                    raw += lot.remaining * lot_rate * months
                amount = round_money(raw)
                rate = (raw / principal).quantize(RATE_PLACES)
            else:
                rate = account.monthly_rate * months
                amount = apply_rate(principal, rate)

            if amount <= 0:
                continue

            event = AccrualEvent(
                period_key=key,
                source=AccrualSource.LOAN_ACCOUNT,
                source_id=account.account_id,
                account_id=account.account_id,
                period_start=previous_boundary(anchor, months, boundary - timedelta(days=1)),
                period_end=boundary,
                principal=principal,
                rate=rate,
                amount=amount,
            )
            credit = credit_entry(event, sequence)
            sequence += 1
            run.events.append(event)
            run.credits.append(credit)
            working.append(credit)

        return run
