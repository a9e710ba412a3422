"""Loan account model."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from yield_ledger.models.ledger.enums import AccountStatus


@dataclass(frozen=True)
class AccountIdentity:
    """Identity fields an import row can carry to resolve or create an account."""

    email: str | None = None
    account_number: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None

    @property
    def key(self) -> str | None:
        """Lookup key: account number when present, otherwise the email."""
        if self.account_number:
            return self.account_number
        return self.email.lower() if self.email else None


@dataclass
class LoanAccount:
    """Interest-bearing loan/yield account.

    ``current_balance`` is a cached value refreshed by every committed batch
    or accrual; the entries remain the source of truth.
    """

    account_id: str
    account_number: str
    owner_ref: str | None  # weak reference to the user (usually an email)
    principal_amount: Decimal  # opening principal, before any entry
    current_balance: Decimal
    monthly_rate: Decimal  # e.g. 0.01 for 1% a month
    status: AccountStatus
    created_at: datetime
    opened_on: date | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    last_accrual_date: date | None = None
    accrual_anchor: date | None = None  # fixed by the first credited period
    updated_at: datetime | None = None
