"""Ledger stores and the collaborator contracts they implement."""

from yield_ledger.store.base import AccountDirectory, AccountSnapshot, LedgerRepository
from yield_ledger.store.memory import InMemoryLedgerStore
from yield_ledger.store.postgres import PostgresLedgerStore

__all__ = [
    "AccountDirectory",
    "AccountSnapshot",
    "InMemoryLedgerStore",
    "LedgerRepository",
    "PostgresLedgerStore",
]
