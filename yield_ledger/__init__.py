"""yield-ledger: loan and yield account ledger with replace-not-append imports."""

__version__ = "0.1.0"
