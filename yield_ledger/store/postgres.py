"""PostgreSQL ledger store built on psycopg 3.

Atomicity comes from the database: a batch commit runs in one transaction
that locks the account row, checks its version column and swaps the entry
sets. A partial unique index keeps at most one active batch per
(account, source identity) even if two writers slip past the version check.

Each thread talks to the database over its own connection, so the
advisory lock taken by one worker blocks the others instead of being
re-entered on a shared session.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Iterator

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from yield_ledger.exceptions import (
    AccountNotFoundError,
    DepositNotFoundError,
    InvalidEntityStateError,
    PersistenceFailureError,
    ReplacementRaceLostError,
)
from yield_ledger.logging import get_logger
from yield_ledger.models.ledger import (
    AccountIdentity,
    AccountStatus,
    AccrualEvent,
    BatchStatus,
    DepositStatus,
    EntryKind,
    ImportBatch,
    LedgerEntry,
    LoanAccount,
    YieldDeposit,
)
from yield_ledger.money import ZERO
from yield_ledger.store.base import AccountSnapshot

logger = get_logger(__name__)

SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS ledger_accounts (
        account_id TEXT PRIMARY KEY,
        account_number TEXT UNIQUE NOT NULL,
        owner_ref TEXT,
        principal_amount NUMERIC(15,2) NOT NULL DEFAULT 0,
        current_balance NUMERIC(15,2) NOT NULL DEFAULT 0 CHECK (current_balance >= 0),
        monthly_rate NUMERIC(9,6) NOT NULL,
        status TEXT NOT NULL,
        opened_on DATE,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        last_accrual_date DATE,
        accrual_anchor DATE,
        version INTEGER NOT NULL DEFAULT 0,
        next_sequence INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL DEFAULT now(),
        updated_at TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_accounts_owner
        ON ledger_accounts (lower(owner_ref)) WHERE owner_ref IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS import_batches (
        batch_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES ledger_accounts(account_id),
        source_identity TEXT NOT NULL,
        entry_ids TEXT[] NOT NULL,
        status TEXT NOT NULL,
        replaced_batch_id TEXT,
        created_at TIMESTAMP NOT NULL,
        superseded_at TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_import_batches_active
        ON import_batches (account_id, source_identity) WHERE status = 'ACTIVE'
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        entry_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES ledger_accounts(account_id),
        kind TEXT NOT NULL,
        amount NUMERIC(15,2) NOT NULL CHECK (amount > 0),
        transaction_date DATE NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        import_batch_id TEXT REFERENCES import_batches(batch_id),
        sequence INTEGER NOT NULL,
        bonus_rate NUMERIC(9,6),
        row_number INTEGER,
        accrual_key TEXT UNIQUE,
        tags TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMP,
        removed_by_batch TEXT,
        removed_at TIMESTAMP
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_ledger_entries_account
        ON ledger_entries (account_id) WHERE removed_by_batch IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS yield_deposits (
        deposit_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES ledger_accounts(account_id),
        principal_amount NUMERIC(15,2) NOT NULL CHECK (principal_amount > 0),
        annual_yield_rate NUMERIC(7,4) NOT NULL,
        start_date DATE NOT NULL,
        end_date DATE,
        status TEXT NOT NULL,
        total_paid NUMERIC(15,2) NOT NULL DEFAULT 0 CHECK (total_paid >= 0),
        last_payment_date DATE,
        next_payment_date DATE,
        created_at TIMESTAMP,
        notes TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accrual_events (
        period_key TEXT PRIMARY KEY,
        source TEXT NOT NULL,
        source_id TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES ledger_accounts(account_id),
        period_start DATE NOT NULL,
        period_end DATE NOT NULL,
        principal NUMERIC(15,2) NOT NULL,
        rate NUMERIC(12,8) NOT NULL,
        amount NUMERIC(15,2) NOT NULL,
        partial BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_accrual_events_source ON accrual_events (source_id)",
)

ENTRY_COLUMNS = (
    "entry_id, account_id, kind, amount, transaction_date, description, import_batch_id, "
    "sequence, bonus_rate, row_number, accrual_key, tags, created_at"
)

INSERT_ENTRY_SQL = f"""
    INSERT INTO ledger_entries ({ENTRY_COLUMNS})
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""  # noqa: S608


class PostgresLedgerStore:
    """Ledger store backed by PostgreSQL.

    Parameters
    ----------
    connection_string : str
        libpq connection string, e.g. ``postgresql://user:pw@host:5432/ledger``.
    default_monthly_rate : Decimal
        Monthly rate given to accounts created from imports.
    """

    def __init__(
        self,
        connection_string: str,
        default_monthly_rate: Decimal = Decimal("0.01"),
    ) -> None:
        self.connection_string = connection_string
        self.default_monthly_rate = default_monthly_rate
        self._local = threading.local()
        self._connections: list[psycopg.Connection] = []
        self._connections_lock = threading.Lock()
        # Connect eagerly so a bad DSN fails at construction
        self.conn  # noqa: B018

    @property
    def conn(self) -> psycopg.Connection:
        """Connection owned by the calling thread, opened on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            with self._guard("connect"):
                conn = psycopg.connect(
                    self.connection_string, autocommit=True, row_factory=dict_row
                )
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        """Surface driver errors as ``PersistenceFailureError``."""
        try:
            yield
        except psycopg.Error as e:
            logger.error("PostgreSQL %s failed: %s", action, e)
            raise PersistenceFailureError(f"PostgreSQL {action} failed: {e}") from e

    def create_tables(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._guard("create tables"), self.conn.transaction():
            for statement in SCHEMA_SQL:
                self.conn.execute(statement)
        logger.info("Ledger tables ready")

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        self._local = threading.local()
        for conn in connections:
            conn.close()

    # Accounts

    def get_account(self, account_id: str) -> LoanAccount:
        """Get an account by id."""
        with self._guard("get account"):
            row = self.conn.execute(
                "SELECT * FROM ledger_accounts WHERE account_id = %s", (account_id,)
            ).fetchone()
        if row is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return _row_to_account(row)

    def find_account(self, key: str) -> LoanAccount | None:
        """Find an account by account number or owner email."""
        with self._guard("find account"):
            row = self.conn.execute(
                "SELECT * FROM ledger_accounts "
                "WHERE account_number = %s OR lower(owner_ref) = lower(%s) LIMIT 1",
                (key, key),
            ).fetchone()
        return _row_to_account(row) if row else None

    def add_account(self, account: LoanAccount) -> None:
        """Insert a new account."""
        try:
            with self._guard("add account"):
                self.conn.execute(
                    """
                    INSERT INTO ledger_accounts (
                        account_id, account_number, owner_ref, principal_amount,
                        current_balance, monthly_rate, status, opened_on, first_name,
                        last_name, phone, last_accrual_date, accrual_anchor, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.account_id, account.account_number, account.owner_ref,
                        account.principal_amount, account.current_balance, account.monthly_rate,
                        account.status.value, account.opened_on, account.first_name,
                        account.last_name, account.phone, account.last_accrual_date,
                        account.accrual_anchor, account.created_at,
                    ),
                )
        except PersistenceFailureError as e:
            if isinstance(e.__cause__, pg_errors.UniqueViolation):
                raise InvalidEntityStateError(
                    f"Account {account.account_number} already registered"
                ) from e.__cause__
            raise
        logger.info("Account %s created for %s", account.account_number, account.owner_ref)

    def save_account(self, account: LoanAccount) -> None:
        """Persist mutable account fields.

        The accrual anchor is write-once: a stored anchor is never replaced.
        """
        with self._guard("save account"):
            cur = self.conn.execute(
                """
                UPDATE ledger_accounts
                SET monthly_rate = %s, status = %s, last_accrual_date = %s,
                    accrual_anchor = COALESCE(accrual_anchor, %s),
                    first_name = %s, last_name = %s, phone = %s, updated_at = now()
                WHERE account_id = %s
                """,
                (
                    account.monthly_rate, account.status.value, account.last_accrual_date,
                    account.accrual_anchor, account.first_name, account.last_name,
                    account.phone, account.account_id,
                ),
            )
        if cur.rowcount == 0:
            raise AccountNotFoundError(f"Account {account.account_id} not found")

    def build_account(self, identity: AccountIdentity) -> LoanAccount:
        """Create an unsaved account for an import identity."""
        account_id = uuid.uuid4().hex
        return LoanAccount(
            account_id=account_id,
            account_number=identity.account_number or f"YL-{account_id[:8].upper()}",
            owner_ref=identity.email,
            principal_amount=ZERO,
            current_balance=ZERO,
            monthly_rate=self.default_monthly_rate,
            status=AccountStatus.ACTIVE,
            created_at=datetime.now(),
            first_name=identity.first_name,
            last_name=identity.last_name,
            phone=identity.phone,
        )

    def resolve_or_create_account(
        self,
        identity: AccountIdentity,
        allow_create: bool = False,
    ) -> LoanAccount:
        """Resolve an identity to an account, creating it when allowed."""
        account = None
        if identity.account_number:
            account = self.find_account(identity.account_number)
        if account is None and identity.email:
            account = self.find_account(identity.email)
        if account is not None:
            return account
        if not allow_create or not identity.email:
            raise AccountNotFoundError(f"No account found for {identity.key}")
        account = self.build_account(identity)
        self.add_account(account)
        return account

    @contextmanager
    def account_lock(self, account_id: str) -> Iterator[None]:
        """Serialize writers on one account with a transaction-scoped advisory lock."""
        with self._guard("lock account"), self.conn.transaction():
            self.conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (account_id,))
            yield

    # Entries and batches

    def snapshot(self, account_id: str) -> AccountSnapshot:
        """Committed entries, active batches and version, read consistently."""
        with self._guard("snapshot"), self.conn.transaction():
            head = self.conn.execute(
                "SELECT version, next_sequence FROM ledger_accounts "
                "WHERE account_id = %s FOR SHARE",
                (account_id,),
            ).fetchone()
            if head is None:
                return AccountSnapshot(account_id, (), (), 0, 1)
            entries = self._select_entries(account_id)
            batch_rows = self.conn.execute(
                "SELECT * FROM import_batches WHERE account_id = %s AND status = 'ACTIVE' "
                "ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return AccountSnapshot(
            account_id=account_id,
            entries=tuple(entries),
            batches=tuple(_row_to_batch(r) for r in batch_rows),
            version=head["version"],
            next_sequence=head["next_sequence"],
        )

    def load_entries(self, account_id: str) -> list[LedgerEntry]:
        """Active entries of an account."""
        with self._guard("load entries"):
            return self._select_entries(account_id)

    def _select_entries(self, account_id: str) -> list[LedgerEntry]:
        rows = self.conn.execute(
            f"SELECT {ENTRY_COLUMNS} FROM ledger_entries "  # noqa: S608
            "WHERE account_id = %s AND removed_by_batch IS NULL "
            "ORDER BY transaction_date, sequence",
            (account_id,),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def commit_batch(
        self,
        account_id: str,
        remove_entry_ids: Iterable[str],
        add_entries: Iterable[LedgerEntry],
        new_batch: ImportBatch,
        expected_version: int,
        new_balance: Decimal,
    ) -> int:
        """Swap entry sets and activate a batch in one transaction.

        Raises
        ------
        ReplacementRaceLostError
            If the version moved or another active batch appeared.
        """
        remove_ids = list(remove_entry_ids)
        added = list(add_entries)
        try:
            with self._guard("commit batch"), self.conn.transaction():
                head = self.conn.execute(
                    "SELECT version, next_sequence FROM ledger_accounts "
                    "WHERE account_id = %s FOR UPDATE",
                    (account_id,),
                ).fetchone()
                if head is None:
                    raise AccountNotFoundError(f"Account {account_id} not found")
                if head["version"] != expected_version:
                    raise ReplacementRaceLostError(
                        f"Account {account_id} moved from version {expected_version} "
                        f"to {head['version']} during reconciliation"
                    )

                self.conn.execute(
                    "UPDATE import_batches SET status = %s, superseded_at = now() "
                    "WHERE account_id = %s AND source_identity = %s AND status = %s",
                    (
                        BatchStatus.SUPERSEDED.value, account_id,
                        new_batch.source_identity, BatchStatus.ACTIVE.value,
                    ),
                )
                if remove_ids:
                    self.conn.execute(
                        "UPDATE ledger_entries SET removed_by_batch = %s, removed_at = now() "
                        "WHERE account_id = %s AND entry_id = ANY(%s)",
                        (new_batch.batch_id, account_id, remove_ids),
                    )
                self.conn.execute(
                    """
                    INSERT INTO import_batches (
                        batch_id, account_id, source_identity, entry_ids, status,
                        replaced_batch_id, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        new_batch.batch_id, account_id, new_batch.source_identity,
                        list(new_batch.entry_ids), new_batch.status.value,
                        new_batch.replaced_batch_id, new_batch.created_at,
                    ),
                )
                if added:
                    with self.conn.cursor() as cur:
                        cur.executemany(INSERT_ENTRY_SQL, [_entry_params(e) for e in added])

                next_sequence = max([head["next_sequence"]] + [e.sequence + 1 for e in added])
                self.conn.execute(
                    "UPDATE ledger_accounts SET version = version + 1, next_sequence = %s, "
                    "current_balance = %s, updated_at = now() WHERE account_id = %s",
                    (next_sequence, new_balance, account_id),
                )
        except PersistenceFailureError as e:
            if isinstance(e.__cause__, pg_errors.UniqueViolation):
                raise ReplacementRaceLostError(
                    f"Another active batch for {new_batch.source_identity} was committed"
                ) from e.__cause__
            raise

        logger.info(
            "Committed batch %s on account %s: -%d +%d entries",
            new_batch.batch_id, account_id, len(remove_ids), len(added),
            extra={
                "account_id": account_id,
                "batch_id": new_batch.batch_id,
                "entry_count": len(added),
                "removed_count": len(remove_ids),
                "version": expected_version + 1,
            },
        )
        return expected_version + 1

    # Yield deposits and accrual

    def get_yield_deposit(self, deposit_id: str) -> YieldDeposit:
        """Get a yield deposit by id."""
        with self._guard("get deposit"):
            row = self.conn.execute(
                "SELECT * FROM yield_deposits WHERE deposit_id = %s", (deposit_id,)
            ).fetchone()
        if row is None:
            raise DepositNotFoundError(f"Yield deposit {deposit_id} not found")
        return _row_to_deposit(row)

    def load_yield_deposits(
        self,
        account_id: str | None = None,
        status: DepositStatus | None = None,
    ) -> list[YieldDeposit]:
        """Yield deposits, optionally filtered by account and status."""
        clauses = []
        params: list[Any] = []
        if account_id is not None:
            clauses.append("account_id = %s")
            params.append(account_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._guard("load deposits"):
            rows = self.conn.execute(
                f"SELECT * FROM yield_deposits {where}ORDER BY start_date, deposit_id",  # noqa: S608
                params,
            ).fetchall()
        return [_row_to_deposit(r) for r in rows]

    def save_yield_deposit(self, deposit: YieldDeposit) -> None:
        """Insert or update a yield deposit."""
        with self._guard("save deposit"):
            self.conn.execute(
                """
                INSERT INTO yield_deposits (
                    deposit_id, account_id, principal_amount, annual_yield_rate, start_date,
                    end_date, status, total_paid, last_payment_date, next_payment_date,
                    created_at, notes
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (deposit_id) DO UPDATE SET
                    end_date = EXCLUDED.end_date,
                    status = EXCLUDED.status,
                    total_paid = EXCLUDED.total_paid,
                    last_payment_date = EXCLUDED.last_payment_date,
                    next_payment_date = EXCLUDED.next_payment_date,
                    notes = EXCLUDED.notes
                """,
                (
                    deposit.deposit_id, deposit.account_id, deposit.principal_amount,
                    deposit.annual_yield_rate, deposit.start_date, deposit.end_date,
                    deposit.status.value, deposit.total_paid, deposit.last_payment_date,
                    deposit.next_payment_date, deposit.created_at or datetime.now(), deposit.notes,
                ),
            )

    def save_accrual_events(
        self,
        account_id: str,
        events: Iterable[AccrualEvent],
        credits: Iterable[LedgerEntry] = (),
    ) -> list[AccrualEvent]:
        """Insert new accrual events with their credit entries.

        Events whose period key already exists are skipped by
        ``ON CONFLICT DO NOTHING`` together with their credit.
        """
        credits_by_key = {c.accrual_key: c for c in credits}
        stored: list[AccrualEvent] = []
        with self._guard("save accrual events"), self.conn.transaction():
            head = self.conn.execute(
                "SELECT next_sequence FROM ledger_accounts WHERE account_id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if head is None:
                raise AccountNotFoundError(f"Account {account_id} not found")

            credited = ZERO
            next_sequence = head["next_sequence"]
            for event in events:
                inserted = self.conn.execute(
                    """
                    INSERT INTO accrual_events (
                        period_key, source, source_id, account_id, period_start,
                        period_end, principal, rate, amount, partial
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (period_key) DO NOTHING
                    RETURNING period_key
                    """,
                    (
                        event.period_key, event.source.value, event.source_id, account_id,
                        event.period_start, event.period_end, event.principal, event.rate,
                        event.amount, event.partial,
                    ),
                ).fetchone()
                if inserted is None:
                    logger.debug("Accrual %s already applied", event.period_key)
                    continue
                stored.append(event)
                credit = credits_by_key.get(event.period_key)
                if credit is not None:
                    self.conn.execute(INSERT_ENTRY_SQL, _entry_params(credit))
                    credited += credit.amount
                    next_sequence = max(next_sequence, credit.sequence + 1)

            if stored:
                self.conn.execute(
                    "UPDATE ledger_accounts SET current_balance = current_balance + %s, "
                    "version = version + 1, next_sequence = %s, updated_at = now() "
                    "WHERE account_id = %s",
                    (credited, next_sequence, account_id),
                )
        return stored

    def applied_period_keys(self, source_id: str) -> set[str]:
        """Period keys already applied for a deposit or account."""
        with self._guard("load period keys"):
            rows = self.conn.execute(
                "SELECT period_key FROM accrual_events WHERE source_id = %s", (source_id,)
            ).fetchall()
        return {r["period_key"] for r in rows}


def _entry_params(entry: LedgerEntry) -> tuple:
    return (
        entry.entry_id, entry.account_id, entry.kind.value, entry.amount, entry.transaction_date,
        entry.description, entry.import_batch_id, entry.sequence, entry.bonus_rate,
        entry.row_number, entry.accrual_key, sorted(entry.tags), entry.created_at or datetime.now(),
    )


def _row_to_entry(row: dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        account_id=row["account_id"],
        kind=EntryKind(row["kind"]),
        amount=row["amount"],
        transaction_date=row["transaction_date"],
        description=row["description"] or "",
        import_batch_id=row["import_batch_id"],
        sequence=row["sequence"],
        bonus_rate=row["bonus_rate"],
        row_number=row["row_number"],
        accrual_key=row["accrual_key"],
        tags=frozenset(row["tags"] or ()),
        created_at=row["created_at"],
    )


def _row_to_account(row: dict[str, Any]) -> LoanAccount:
    return LoanAccount(
        account_id=row["account_id"],
        account_number=row["account_number"],
        owner_ref=row["owner_ref"],
        principal_amount=row["principal_amount"],
        current_balance=row["current_balance"],
        monthly_rate=row["monthly_rate"],
        status=AccountStatus(row["status"]),
        created_at=row["created_at"],
        opened_on=row["opened_on"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        phone=row["phone"],
        last_accrual_date=row["last_accrual_date"],
        accrual_anchor=row["accrual_anchor"],
        updated_at=row["updated_at"],
    )


def _row_to_batch(row: dict[str, Any]) -> ImportBatch:
    return ImportBatch(
        batch_id=row["batch_id"],
        account_id=row["account_id"],
        source_identity=row["source_identity"],
        entry_ids=tuple(row["entry_ids"]),
        created_at=row["created_at"],
        status=BatchStatus(row["status"]),
        replaced_batch_id=row["replaced_batch_id"],
        superseded_at=row["superseded_at"],
    )


def _row_to_deposit(row: dict[str, Any]) -> YieldDeposit:
    return YieldDeposit(
        deposit_id=row["deposit_id"],
        account_id=row["account_id"],
        principal_amount=row["principal_amount"],
        annual_yield_rate=row["annual_yield_rate"],
        start_date=row["start_date"],
        status=DepositStatus(row["status"]),
        end_date=row["end_date"],
        total_paid=row["total_paid"],
        last_payment_date=row["last_payment_date"],
        next_payment_date=row["next_payment_date"],
        created_at=row["created_at"],
        notes=row["notes"] or "",
    )

