"""Enumeration types for ledger entities."""

from enum import Enum


class EntryKind(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    BONUS = "BONUS"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class DepositStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class BatchStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUPERSEDED = "SUPERSEDED"


class AccrualSource(str, Enum):
    """What an accrual event was computed for."""

    YIELD_DEPOSIT = "YIELD_DEPOSIT"
    LOAN_ACCOUNT = "LOAN_ACCOUNT"


class AttributionPolicy(str, Enum):
    """How bonus/yield accrual is attributed on a loan account.

    PER_LOT accrues each open deposit lot at its own bonus rate (falling back
    to the account monthly rate). ACCOUNT_TOTAL accrues the whole outstanding
    principal at the account monthly rate.
    """

    PER_LOT = "PER_LOT"
    ACCOUNT_TOTAL = "ACCOUNT_TOTAL"
