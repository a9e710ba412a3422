"""Read-side account summary."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal


@dataclass(frozen=True)
class Projection:
    """Current state of an account folded from its committed entries."""

    account_id: str
    as_of: date | None
    current_balance: Decimal
    total_deposits: Decimal
    total_withdrawals: Decimal
    total_yield_paid: Decimal
    last_activity_date: date | None
    entry_count: int


@dataclass(frozen=True)
class MonthlyBalance:
    """Month-end snapshot of an account for one month with activity."""

    month_end: date
    opening_balance: Decimal
    ending_balance: Decimal
    total_deposits: Decimal
    total_withdrawals: Decimal
    total_bonuses: Decimal
    entry_count: int

    @property
    def monthly_growth(self) -> Decimal:
        return self.ending_balance - self.opening_balance
