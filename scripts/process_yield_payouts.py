#!/usr/bin/env python3
"""Apply (or preview) due yield payouts for every active yield deposit.

Meant to run once a day from cron. Accrual is idempotent per period, so a
rerun for the same date pays nothing twice.

Examples
--------
    python scripts/process_yield_payouts.py --dry-run
    python scripts/process_yield_payouts.py --date 2024-12-31 --kafka-bootstrap localhost:9092
"""

import argparse
import sys
from datetime import date, datetime
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from yield_ledger.config import LedgerConfig
from yield_ledger.exceptions import ConfigurationError, LedgerError
from yield_ledger.logging import get_logger, setup_logging
from yield_ledger.service import LedgerService
from yield_ledger.sinks.kafka import KafkaSink
from yield_ledger.store.postgres import PostgresLedgerStore

logger = get_logger(__name__)


def parse_date(value: str) -> date:
    """argparse type for ISO dates."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Process due yield deposit payouts")
    parser.add_argument(
        "--date",
        type=parse_date,
        default=date.today(),
        help="Process payouts due on or before this date (default: today)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be paid without writing anything",
    )
    parser.add_argument(
        "--postgres-url",
        type=str,
        default=None,
        help="PostgreSQL connection URL (default: from POSTGRES_* variables)",
    )
    parser.add_argument(
        "--kafka-bootstrap",
        type=str,
        default=None,
        help="Publish accrual events to this Kafka cluster",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create ledger tables before processing",
    )
    args = parser.parse_args()

    try:
        config = LedgerConfig.from_env()
    except ConfigurationError as e:
        parser.error(str(e))
    setup_logging(config.log_level, config.log_format)

    postgres_url = args.postgres_url or config.postgres.connection_string
    try:
        store = PostgresLedgerStore(postgres_url, config.imports.default_monthly_rate)
    except LedgerError as e:
        logger.error("Cannot open ledger store: %s", e)
        return 1
    sink = None
    if args.kafka_bootstrap and not args.dry_run:
        config.kafka.bootstrap_servers = args.kafka_bootstrap
        sink = KafkaSink(config.kafka)

    logger.info("=" * 60)
    logger.info("Yield payouts as of %s%s", args.date, " (DRY RUN)" if args.dry_run else "")
    logger.info("=" * 60)

    try:
        if args.create_tables:
            store.create_tables()
        service = LedgerService(store, config=config, sink=sink)
        report = service.process_due_payouts(args.date, dry_run=args.dry_run)
    except LedgerError as e:
        logger.error("Payout run aborted: %s", e)
        return 1
    finally:
        if sink is not None:
            sink.close()
        store.close()

    for event in report.events:
        logger.info(
            "  %s  %s -> %s  %s",
            event.period_end, event.source_id, event.account_id, event.amount,
        )
    logger.info("Deposits processed: %d", report.deposits_processed)
    logger.info("Payments %s: %d, total %s",
                "due" if args.dry_run else "made", len(report.events), report.total)
    for deposit_id, reason in report.failures:
        logger.error("  failed %s: %s", deposit_id, reason)

    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
