"""Read-side fold of an account's committed entries."""

from __future__ import annotations

import calendar
from datetime import date
from decimal import Decimal
from itertools import groupby
from typing import Iterable

from yield_ledger.models.ledger import EntryKind, LedgerEntry, MonthlyBalance, Projection
from yield_ledger.money import ZERO


def project(
    account_id: str,
    entries: Iterable[LedgerEntry],
    opening_balance: Decimal = ZERO,
    as_of: date | None = None,
) -> Projection:
    """Summarize an account.

    Only entries dated on or before ``as_of`` are counted when it is given.
    The balance is a plain sum of signed amounts; it must agree with the
    final balance of :func:`yield_ledger.engine.allocation.replay` for the
    same entries.
    """
    deposits = ZERO
    withdrawals = ZERO
    yield_paid = ZERO
    last_activity: date | None = None
    count = 0

    for entry in entries:
        if as_of is not None and entry.transaction_date > as_of:
            continue
        count += 1
        if entry.kind == EntryKind.DEPOSIT:
            deposits += entry.amount
        elif entry.kind == EntryKind.WITHDRAWAL:
            withdrawals += entry.amount
        else:
            yield_paid += entry.amount
        if last_activity is None or entry.transaction_date > last_activity:
            last_activity = entry.transaction_date

    return Projection(
        account_id=account_id,
        as_of=as_of,
        current_balance=opening_balance + deposits - withdrawals + yield_paid,
        total_deposits=deposits,
        total_withdrawals=withdrawals,
        total_yield_paid=yield_paid,
        last_activity_date=last_activity,
        entry_count=count,
    )


def monthly_history(
    entries: Iterable[LedgerEntry],
    opening_balance: Decimal = ZERO,
    as_of: date | None = None,
) -> list[MonthlyBalance]:
    """Month-end balances of an account, oldest first.

    Entries are applied in replay order and grouped by calendar month. Only
    months with at least one entry get a snapshot; a quiet month keeps the
    previous snapshot's ending balance. The last ending balance equals the
    balance :func:`project` reports for the same entries.
    """
    ordered = sorted(
        (e for e in entries if as_of is None or e.transaction_date <= as_of),
        key=lambda e: (e.transaction_date, e.sequence, e.entry_id),
    )

    history: list[MonthlyBalance] = []
    balance = opening_balance
    for (year, month), group in groupby(
        ordered, key=lambda e: (e.transaction_date.year, e.transaction_date.month)
    ):
        deposits = withdrawals = bonuses = ZERO
        count = 0
        for entry in group:
            count += 1
            if entry.kind == EntryKind.DEPOSIT:
                deposits += entry.amount
            elif entry.kind == EntryKind.WITHDRAWAL:
                withdrawals += entry.amount
            else:
                bonuses += entry.amount

        opening = balance
        balance = opening + deposits - withdrawals + bonuses
        history.append(
            MonthlyBalance(
                month_end=date(year, month, calendar.monthrange(year, month)[1]),
                opening_balance=opening,
                ending_balance=balance,
                total_deposits=deposits,
                total_withdrawals=withdrawals,
                total_bonuses=bonuses,
                entry_count=count,
            )
        )
    return history
