#!/usr/bin/env python3
"""Generate sample upload rows for manual import testing.

Writes a JSON file mapping each generated client email to its rows, in the
shape the import endpoint receives after spreadsheet parsing.
"""

import argparse
import json
import sys
from datetime import date, timedelta
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from yield_ledger.generators import SampleRowGenerator
from yield_ledger.sinks.serialization import to_dict


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Generate sample import rows")
    parser.add_argument("--clients", type=int, default=5, help="Number of clients")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--days", type=int, default=180, help="History length in days")
    parser.add_argument(
        "--output",
        type=Path,
        default=project_root / "local" / "sample_rows.json",
        help="Output file",
    )
    args = parser.parse_args()

    end_date = date.today()
    start_date = end_date - timedelta(days=args.days)

    generator = SampleRowGenerator(seed=args.seed)
    data = {
        email: [to_dict(row) for row in rows]
        for email, rows in generator.generate_batch(args.clients, start_date, end_date)
    }

    args.output.parent.mkdir(parents=True, exist_ok=True)
    with open(args.output, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)

    total_rows = sum(len(rows) for rows in data.values())
    print(f"Saved {total_rows} rows for {len(data)} clients to {args.output}")


if __name__ == "__main__":
    main()
