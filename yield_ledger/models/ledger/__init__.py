"""Ledger domain models."""

from yield_ledger.models.ledger.account import AccountIdentity, LoanAccount
from yield_ledger.models.ledger.allocation import Allocation, Lot, ReplayStep
from yield_ledger.models.ledger.batch import ImportBatch
from yield_ledger.models.ledger.deposit import AccrualEvent, YieldDeposit
from yield_ledger.models.ledger.entry import LedgerEntry
from yield_ledger.models.ledger.enums import (
    AccountStatus,
    AccrualSource,
    AttributionPolicy,
    BatchStatus,
    DepositStatus,
    EntryKind,
)
from yield_ledger.models.ledger.projection import MonthlyBalance, Projection

__all__ = [
    "AccountIdentity",
    "AccountStatus",
    "AccrualEvent",
    "AccrualSource",
    "Allocation",
    "AttributionPolicy",
    "BatchStatus",
    "DepositStatus",
    "EntryKind",
    "ImportBatch",
    "LedgerEntry",
    "LoanAccount",
    "Lot",
    "MonthlyBalance",
    "Projection",
    "ReplayStep",
    "YieldDeposit",
]
