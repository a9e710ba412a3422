"""LIFO allocation of withdrawals against deposit lots.

Replaying an account sorts its entries by ``(transaction_date, sequence)`` and
walks them once. Deposits and credited yield push a lot on a local stack;
a withdrawal drains the most recently pushed lot that still has a remaining
amount before moving down to older lots. The running balance is computed
from entry amounts alone; lots only decide which deposit a withdrawal is
attributed to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable

from yield_ledger.exceptions import InsufficientFundsError
from yield_ledger.logging import get_logger
from yield_ledger.models.ledger import Allocation, EntryKind, LedgerEntry, Lot, ReplayStep
from yield_ledger.money import ZERO, sum_money

logger = get_logger(__name__)


@dataclass
class Replay:
    """Outcome of replaying one account's entries."""

    opening_balance: Decimal
    steps: list[ReplayStep] = field(default_factory=list)
    lots: list[Lot] = field(default_factory=list)

    @property
    def final_balance(self) -> Decimal:
        """Balance after the last entry (the opening balance if none)."""
        return self.steps[-1].balance if self.steps else self.opening_balance

    @property
    def allocations(self) -> list[Allocation]:
        """Every allocation, in replay order."""
        return [a for step in self.steps for a in step.allocations]

    @property
    def outstanding_principal(self) -> Decimal:
        """Remaining amount of non-yield lots."""
        return sum_money(lot.remaining for lot in self.lots if not lot.is_yield)

    def open_lots(self) -> list[Lot]:
        """Lots with a remaining amount, oldest first."""
        return [lot for lot in self.lots if lot.remaining > 0]

    def lot_for(self, entry_id: str) -> Lot | None:
        """Lot created by a given deposit entry."""
        for lot in self.lots:
            if lot.origin_entry_id == entry_id:
                return lot
        return None


def order_entries(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    """Sort entries into deterministic replay order."""
    return sorted(entries, key=lambda e: (e.transaction_date, e.sequence, e.entry_id))


def replay(
    entries: Iterable[LedgerEntry],
    opening_balance: Decimal = ZERO,
    opened_on: date | None = None,
    until: date | None = None,
) -> Replay:
    """Replay entries into a balance trajectory with LIFO attribution.

    Parameters
    ----------
    entries : Iterable[LedgerEntry]
        Committed (or candidate) entries of a single account, in any order.
    opening_balance : Decimal
        Principal present before the first entry; becomes the bottom lot.
    opened_on : date | None
        Date attached to the opening lot.
    until : date | None
        If given, only entries dated strictly before this date are applied.

    Returns
    -------
    Replay
        Steps, final lot state and final balance.

    Raises
    ------
    InsufficientFundsError
        When a withdrawal exceeds the lots open at that point. Nothing is
        clamped; the replay stops at the offending entry.
    """
    result = Replay(opening_balance=opening_balance)
    stack = result.lots
    if opening_balance > 0:
        stack.append(
            Lot(
                origin_entry_id=None,
                opened_on=opened_on,
                original_amount=opening_balance,
                remaining=opening_balance,
            )
        )

    balance = opening_balance
    for entry in order_entries(entries):
        if until is not None and entry.transaction_date >= until:
            break

        if entry.kind == EntryKind.WITHDRAWAL:
            allocations = _allocate(stack, entry, balance)
            balance -= entry.amount
        else:
            stack.append(
                Lot(
                    origin_entry_id=entry.entry_id,
                    opened_on=entry.transaction_date,
                    original_amount=entry.amount,
                    remaining=entry.amount,
                    bonus_rate=entry.bonus_rate,
                    is_yield=entry.kind == EntryKind.BONUS,
                )
            )
            allocations = ()
            balance += entry.amount

        result.steps.append(ReplayStep(entry=entry, balance=balance, allocations=allocations))

    return result


def _allocate(stack: list[Lot], entry: LedgerEntry, balance: Decimal) -> tuple[Allocation, ...]:
    """Consume a withdrawal from the newest lots first."""
    available = sum_money(lot.remaining for lot in stack)
    if entry.amount > available:
        logger.debug(
            "Withdrawal %s of %s exceeds open lots %s (balance %s)",
            entry.entry_id, entry.amount, available, balance,
        )
        raise InsufficientFundsError(entry, requested=entry.amount, available=available)

    outstanding = entry.amount
    allocations: list[Allocation] = []
    for lot in reversed(stack):
        if outstanding == 0:
            break
        if lot.remaining == 0:
            continue
        taken = min(lot.remaining, outstanding)
        lot.remaining -= taken
        outstanding -= taken
        allocations.append(
            Allocation(
                withdrawal_entry_id=entry.entry_id,
                deposit_entry_id=lot.origin_entry_id,
                amount=taken,
            )
        )
    return tuple(allocations)
