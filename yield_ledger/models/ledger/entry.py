"""Ledger entry model."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from yield_ledger.models.ledger.enums import EntryKind


@dataclass(frozen=True)
class LedgerEntry:
    """One accepted transaction on a loan account.

    ``amount`` is always a positive magnitude; ``kind`` carries the direction.
    Entries are immutable; a batch replacement removes them as a whole.
    """

    entry_id: str
    account_id: str
    kind: EntryKind
    amount: Decimal
    transaction_date: date
    description: str = ""
    import_batch_id: str | None = None  # None for manual and accrual entries
    sequence: int = 0  # insertion order, breaks same-day ties
    bonus_rate: Decimal | None = None  # monthly bonus rate for a deposit lot
    row_number: int | None = None  # spreadsheet row that produced it
    accrual_key: str | None = None  # period key for BONUS entries
    tags: frozenset[str] = field(default_factory=frozenset)
    created_at: datetime | None = None

    @property
    def sort_key(self) -> tuple[date, int]:
        """Chronological replay order."""
        return (self.transaction_date, self.sequence)

    @property
    def is_credit(self) -> bool:
        """True for entries that increase the balance."""
        return self.kind != EntryKind.WITHDRAWAL
