"""Custom exception hierarchy for yield-ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    """Base exception for all yield-ledger errors."""

    retry_safe = False


class ConfigurationError(LedgerError):
    """Raised when configuration is invalid or missing."""


class ValidationError(LedgerError):
    """Raised when a raw transaction field is malformed."""

    code = "invalid"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MissingFieldError(ValidationError):
    """Raised when required columns are absent from a row."""

    code = "missing_columns"


class InvalidAmountError(ValidationError):
    """Raised when an amount is non-numeric, zero or negative."""

    code = "invalid_amount"


class InvalidDateError(ValidationError):
    """Raised when a date is unparsable or too far in the future."""

    code = "invalid_date"


class UnknownTransactionTypeError(ValidationError):
    """Raised when a transaction type is neither deposit nor withdrawal."""

    code = "unknown_type"


class InvalidBonusRateError(ValidationError):
    """Raised when a bonus rate is out of range or misplaced."""

    code = "invalid_bonus_rate"


@dataclass(frozen=True)
class RowError:
    """One failing row in a rejected import."""

    row_number: int
    code: str
    message: str
    field: str | None = None

    def __str__(self) -> str:
        return f"Row {self.row_number}: {self.message}"


class ImportValidationError(LedgerError):
    """Raised when any row of a batch fails; lists every failing row."""

    def __init__(self, errors: list[RowError]) -> None:
        self.errors = list(errors)
        super().__init__(
            f"Validation errors found in {len(self.errors)} row(s): "
            + "; ".join(str(e) for e in self.errors)
        )


class EntityNotFoundError(LedgerError):
    """Raised when a referenced entity does not exist."""


class AccountNotFoundError(EntityNotFoundError):
    """Raised when an account key cannot be resolved and creation is not allowed."""

    code = "account_not_found"


class DepositNotFoundError(EntityNotFoundError):
    """Raised when a yield deposit id is unknown."""


class ReferentialIntegrityError(EntityNotFoundError):
    """Raised when a foreign key reference is violated."""


class InvalidEntityStateError(LedgerError):
    """Raised when an entity is in an invalid state for the operation."""


class InsufficientFundsError(LedgerError):
    """Raised when a withdrawal cannot be allocated against prior lots."""

    def __init__(
        self,
        entry: Any,
        requested: Decimal,
        available: Decimal,
    ) -> None:
        self.entry = entry
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        when: date | None = getattr(entry, "transaction_date", None)
        super().__init__(
            f"Insufficient balance for withdrawal of {requested} on {when}: "
            f"available {available}, short by {self.shortfall}"
        )


class SourceIdentityAmbiguousError(LedgerError):
    """Raised when an upload cannot be matched to exactly one logical source."""


class ReplacementRaceLostError(LedgerError):
    """Raised when a concurrent reconciliation committed first."""

    retry_safe = True


class PersistenceFailureError(LedgerError):
    """Raised when the storage collaborator fails."""

    retry_safe = True


class SinkError(LedgerError):
    """Raised when an event sink operation fails."""
