"""Allocation models derived by replaying an account."""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from yield_ledger.models.ledger.entry import LedgerEntry


@dataclass(frozen=True)
class Allocation:
    """Part of a withdrawal consumed from one deposit lot."""

    withdrawal_entry_id: str
    deposit_entry_id: str | None  # None for the opening-principal lot
    amount: Decimal


@dataclass
class Lot:
    """Remaining unconsumed amount of a deposit, tracked for attribution."""

    origin_entry_id: str | None
    opened_on: date | None
    original_amount: Decimal
    remaining: Decimal
    bonus_rate: Decimal | None = None
    is_yield: bool = False  # credited accrual, not principal


@dataclass(frozen=True)
class ReplayStep:
    """Balance and attribution after applying one entry."""

    entry: LedgerEntry
    balance: Decimal
    allocations: tuple[Allocation, ...] = field(default_factory=tuple)
