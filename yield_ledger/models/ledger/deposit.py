"""Yield deposit and accrual event models."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from yield_ledger.models.ledger.enums import AccrualSource, DepositStatus


@dataclass
class YieldDeposit:
    """Fixed-principal deposit paying periodic yield into its account."""

    deposit_id: str
    account_id: str
    principal_amount: Decimal
    annual_yield_rate: Decimal  # e.g. 0.12 for 12% a year
    start_date: date
    status: DepositStatus
    end_date: date | None = None  # None = open-ended
    total_paid: Decimal = Decimal("0.00")
    last_payment_date: date | None = None
    next_payment_date: date | None = None
    created_at: datetime | None = None
    notes: str = ""


@dataclass(frozen=True)
class AccrualEvent:
    """A computed yield payment for one period.

    ``period_key`` is stable for a given source and boundary, so storing the
    same event twice is a no-op.
    """

    period_key: str
    source: AccrualSource
    source_id: str
    account_id: str
    period_start: date
    period_end: date  # the accrual boundary (payment date)
    principal: Decimal
    rate: Decimal  # periodic rate applied
    amount: Decimal
    partial: bool = False
