"""Domain models for the yield ledger."""

from yield_ledger.models.base import Event

__all__ = ["Event"]
