"""Sample spreadsheet rows for exercising imports."""

from __future__ import annotations

import random
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterator

from faker import Faker

from yield_ledger.money import round_money


class SampleRowGenerator:
    """Generate realistic upload rows, one client at a time.

    Each client gets identity columns on its first row, a run of deposits and
    then withdrawals that never take the running balance below zero.

    Parameters
    ----------
    seed : int | None
        Random seed for reproducibility.
    locale : str
        Faker locale (default ``en_US``).
    """

    DESCRIPTIONS_DEPOSIT = [
        "Initial investment",
        "Additional deposit",
        "Monthly savings",
        "Business investment",
        "Bonus deposit",
    ]
    DESCRIPTIONS_WITHDRAWAL = [
        "Partial withdrawal",
        "Emergency withdrawal",
        "Scheduled withdrawal",
    ]

    # Probability that a deposit carries its own monthly bonus rate
    BONUS_RATE_PROBABILITY = 0.25
    BONUS_RATES = ["0.5%", "1%", "1.5%", "2%"]

    def __init__(self, seed: int | None = None, locale: str = "en_US") -> None:
        self.fake = Faker(locale)
        if seed is not None:
            self.fake.seed_instance(seed)
            random.seed(seed)

    def generate_client_rows(
        self,
        start_date: date,
        end_date: date,
        deposits: int = 3,
        withdrawals: int = 1,
    ) -> list[dict[str, Any]]:
        """Rows for one new client between two dates.

        Parameters
        ----------
        start_date : date
            Earliest transaction date.
        end_date : date
            Latest transaction date; keep it on or before the import date.
        deposits : int
            Number of deposit rows.
        withdrawals : int
            Maximum number of withdrawal rows.

        Returns
        -------
        list[dict[str, Any]]
            Rows in chronological order.
        """
        first_name = self.fake.first_name()
        last_name = self.fake.last_name()
        email = self.fake.unique.email().lower()

        span = max(1, (end_date - start_date).days)
        offsets = sorted(random.sample(range(span + 1), min(span + 1, deposits + withdrawals)))
        dates = [start_date + timedelta(days=o) for o in offsets]

        rows: list[dict[str, Any]] = []
        balance = Decimal("0.00")
        for i, when in enumerate(dates):
            is_deposit = i < deposits or balance <= 0
            if is_deposit:
                amount = round_money(Decimal(random.randint(500, 10000)))
                balance += amount
                row = {
                    "email": email,
                    "transaction_type": "deposit",
                    "amount": amount,
                    "transaction_date": when.isoformat(),
                    "description": random.choice(self.DESCRIPTIONS_DEPOSIT),
                }
                if random.random() < self.BONUS_RATE_PROBABILITY:
                    row["bonus_rate"] = random.choice(self.BONUS_RATES)
            else:
                share = Decimal(random.randint(10, 60)) / 100
                amount = round_money(balance * share)
                if amount <= 0:
                    continue
                balance -= amount
                row = {
                    "email": email,
                    "transaction_type": "withdrawal",
                    "amount": amount,
                    "transaction_date": when.isoformat(),
                    "description": random.choice(self.DESCRIPTIONS_WITHDRAWAL),
                }
            rows.append(row)

        rows[0].update(
            {
                "first_name": first_name,
                "last_name": last_name,
                "phone": self.fake.numerify("555-####"),
            }
        )
        return rows

    def generate_batch(
        self,
        count: int,
        start_date: date,
        end_date: date,
    ) -> Iterator[tuple[str, list[dict[str, Any]]]]:
        """Generate rows for several clients.

        Yields
        ------
        tuple[str, list[dict[str, Any]]]
            Client email and its rows.
        """
        for _ in range(count):
            rows = self.generate_client_rows(
                start_date,
                end_date,
                deposits=random.randint(1, 4),
                withdrawals=random.randint(0, 2),
            )
            yield rows[0]["email"], rows
