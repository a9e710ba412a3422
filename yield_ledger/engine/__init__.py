"""Ledger engine: normalization, allocation, accrual, reconciliation, projection."""

from yield_ledger.engine.accrual import AccrualRun, LoanAccrualScheduler, YieldAccrualScheduler
from yield_ledger.engine.allocation import Replay, replay
from yield_ledger.engine.normalizer import TransactionNormalizer
from yield_ledger.engine.projection import monthly_history, project
from yield_ledger.engine.reconciler import ImportReconciler, ReconcilePlan, ReconcileResult

__all__ = [
    "AccrualRun",
    "ImportReconciler",
    "LoanAccrualScheduler",
    "ReconcilePlan",
    "ReconcileResult",
    "Replay",
    "TransactionNormalizer",
    "YieldAccrualScheduler",
    "monthly_history",
    "project",
    "replay",
]
