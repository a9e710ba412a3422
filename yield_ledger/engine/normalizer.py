"""Validation and canonicalization of raw import rows."""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Mapping

from yield_ledger.config import ImportConfig
from yield_ledger.exceptions import (
    AccountNotFoundError,
    ImportValidationError,
    InvalidBonusRateError,
    InvalidDateError,
    MissingFieldError,
    RowError,
    UnknownTransactionTypeError,
    ValidationError,
)
from yield_ledger.logging import get_logger
from yield_ledger.models.ledger import AccountIdentity, EntryKind, LedgerEntry, LoanAccount
from yield_ledger.money import parse_amount, to_decimal
from yield_ledger.store.base import AccountDirectory

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Spreadsheet day 0 in the 1900 date system (accounts for the 1900 leap bug)
SPREADSHEET_EPOCH = date(1899, 12, 30)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d")

# Header aliases seen in uploaded sheets, first match wins
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "account_number": ("account_key", "account_number", "account"),
    "email": ("email", "user_email"),
    "transaction_type": ("transaction_type", "type"),
    "amount": ("amount",),
    "transaction_date": ("transaction_date", "date"),
    "description": ("description", "notes"),
    "bonus_rate": ("bonus_rate", "bonus_percentage"),
    "first_name": ("first_name",),
    "last_name": ("last_name",),
    "phone": ("phone",),
}

TRANSACTION_TYPES = {
    "deposit": EntryKind.DEPOSIT,
    "withdrawal": EntryKind.WITHDRAWAL,
}


def canonical_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """Map a raw row's headers onto canonical field names.

    Headers are compared case-insensitively with spaces and dashes folded to
    underscores, so ``"Transaction Date"`` and ``transaction_date`` match.
    Blank cells are treated as missing.
    """
    folded: dict[str, Any] = {}
    for key, value in row.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        norm = re.sub(r"[\s\-]+", "_", str(key).strip().lower())
        folded[norm] = value.strip() if isinstance(value, str) else value

    result: dict[str, Any] = {}
    for canonical, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            if alias in folded:
                result[canonical] = folded[alias]
                break
    return result


def parse_transaction_type(value: Any) -> EntryKind:
    """Map a type cell to a ledger entry kind, case-insensitively."""
    kind = TRANSACTION_TYPES.get(str(value).strip().lower())
    if kind is None:
        raise UnknownTransactionTypeError(
            f'Transaction type must be "deposit" or "withdrawal", got {value!r}',
            field="transaction_type",
        )
    return kind


def parse_transaction_date(value: Any, as_of: date, tolerance_days: int = 0) -> date:
    """Parse a date cell into a calendar date.

    Accepts ``date``/``datetime`` objects, ISO and US formatted strings and
    spreadsheet serial day numbers.
    """
    parsed: date | None = None
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if value > 0:
            try:
                parsed = SPREADSHEET_EPOCH + timedelta(days=int(value))
            except (OverflowError, ValueError) as e:
                raise InvalidDateError(
                    f"Invalid transaction date format: {value!r}", field="transaction_date"
                ) from e
    elif isinstance(value, str):
        text = value.strip()
        # Timestamps exported as "2024-01-15T00:00:00" keep only the date part
        if "T" in text:
            text = text.split("T", 1)[0]
        for fmt in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt).date()
                break
            except ValueError:
                continue

    if parsed is None or parsed.year < 1900:
        raise InvalidDateError(
            f"Invalid transaction date format: {value!r}", field="transaction_date"
        )

    latest = as_of + timedelta(days=tolerance_days)
    if parsed > latest:
        raise InvalidDateError(
            f"Transaction date {parsed.isoformat()} is in the future (as of {as_of.isoformat()})",
            field="transaction_date",
        )
    return parsed


def parse_bonus_rate(value: Any) -> Decimal:
    """Parse a bonus rate given as a fraction or a percent string."""
    if isinstance(value, str) and value.strip().endswith("%"):
        try:
            rate = to_decimal(value.strip()[:-1]) / 100
        except ValidationError as e:
            raise InvalidBonusRateError(f"Invalid bonus rate: {value!r}", field="bonus_rate") from e
    else:
        try:
            rate = to_decimal(value)
        except ValidationError as e:
            raise InvalidBonusRateError(f"Invalid bonus rate: {value!r}", field="bonus_rate") from e

    if rate < 0 or rate >= 1:
        raise InvalidBonusRateError(
            f"Bonus rate must be between 0 and 1, got {value!r}", field="bonus_rate"
        )
    return rate


class TransactionNormalizer:
    """Turn raw spreadsheet rows into validated, unpersisted ledger entries.

    Parameters
    ----------
    directory : AccountDirectory
        Resolves (and, if allowed, creates) the account a row belongs to.
    config : ImportConfig | None
        Account creation policy and date tolerance.
    """

    def __init__(self, directory: AccountDirectory, config: ImportConfig | None = None) -> None:
        self.directory = directory
        self.config = config or ImportConfig()

    def identity_from_row(self, row: Mapping[str, Any]) -> AccountIdentity:
        """Extract account identity fields from a raw row."""
        fields = canonical_row(row)
        email = fields.get("email")
        if email is not None:
            email = str(email).strip().lower()
            if not EMAIL_RE.match(email):
                raise ValidationError(f"Invalid email format: {email!r}", field="email")
        account_number = fields.get("account_number")
        return AccountIdentity(
            email=email,
            account_number=str(account_number) if account_number is not None else None,
            first_name=fields.get("first_name"),
            last_name=fields.get("last_name"),
            phone=str(fields["phone"]) if "phone" in fields else None,
        )

    def resolve_account(self, identity: AccountIdentity) -> LoanAccount:
        """Resolve an identity, creating the account only with a valid email."""
        if identity.key is None:
            raise MissingFieldError("Missing required columns: email or account_key", field="email")
        allow_create = self.config.allow_account_creation and identity.email is not None
        return self.directory.resolve_or_create_account(identity, allow_create=allow_create)

    def normalize(
        self,
        row: Mapping[str, Any],
        as_of: date,
        row_number: int = 1,
        account: LoanAccount | None = None,
    ) -> LedgerEntry:
        """Validate a single row.

        Parameters
        ----------
        row : Mapping[str, Any]
            Raw field map from the row source.
        as_of : date
            Reference date for the future-date check.
        row_number : int
            1-based row number used in error messages and as tie-break order.
        account : LoanAccount | None
            Account the batch targets. Rows naming another account fail.

        Returns
        -------
        LedgerEntry
            Unpersisted entry with a fresh id.

        Raises
        ------
        ValidationError
            On the first malformed field.
        AccountNotFoundError
            If the row's account cannot be resolved.
        """
        fields = canonical_row(row)
        missing = [
            name for name in ("transaction_type", "amount", "transaction_date") if name not in fields
        ]
        if account is None and "email" not in fields and "account_number" not in fields:
            missing.insert(0, "email")
        if missing:
            raise MissingFieldError(f"Missing required columns: {', '.join(missing)}", field=missing[0])

        kind = parse_transaction_type(fields["transaction_type"])
        amount = parse_amount(fields["amount"])
        when = parse_transaction_date(
            fields["transaction_date"], as_of, self.config.future_tolerance_days
        )

        bonus_rate = None
        if "bonus_rate" in fields:
            if kind != EntryKind.DEPOSIT:
                raise InvalidBonusRateError("Bonus rate is only allowed on deposits", field="bonus_rate")
            bonus_rate = parse_bonus_rate(fields["bonus_rate"])

        if account is None:
            target = self.resolve_account(self.identity_from_row(row))
        else:
            target = account
            if "email" in fields or "account_number" in fields:
                identity = self.identity_from_row(row)
                if not self._belongs_to(identity, account):
                    raise ValidationError(
                        f"Row belongs to {identity.key}, not account {account.account_number}",
                        field="email",
                    )

        return LedgerEntry(
            entry_id=uuid.uuid4().hex,
            account_id=target.account_id,
            kind=kind,
            amount=amount,
            transaction_date=when,
            description=str(fields.get("description", "")),
            sequence=row_number,
            bonus_rate=bonus_rate,
            row_number=row_number,
        )

    @staticmethod
    def _belongs_to(identity: AccountIdentity, account: LoanAccount) -> bool:
        if identity.account_number is not None:
            return identity.account_number == account.account_number
        owner = (account.owner_ref or "").lower()
        return identity.email is not None and identity.email == owner

    def normalize_rows(
        self,
        rows: Iterable[Mapping[str, Any]],
        as_of: date,
        account: LoanAccount | None = None,
    ) -> list[LedgerEntry]:
        """Validate a whole batch, all or nothing.

        Raises
        ------
        ImportValidationError
            Listing every failing row with its reason.
        """
        entries: list[LedgerEntry] = []
        errors: list[RowError] = []
        for row_number, row in enumerate(rows, start=1):
            try:
                entries.append(self.normalize(row, as_of, row_number=row_number, account=account))
            except ValidationError as e:
                errors.append(RowError(row_number, e.code, str(e), e.field))
            except AccountNotFoundError as e:
                errors.append(RowError(row_number, AccountNotFoundError.code, str(e), "email"))

        if errors:
            for err in errors:
                logger.debug("Rejected %s", err)
            raise ImportValidationError(errors)
        return entries
