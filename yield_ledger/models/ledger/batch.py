"""Import batch model."""

from dataclasses import dataclass
from datetime import datetime

from yield_ledger.models.ledger.enums import BatchStatus


@dataclass
class ImportBatch:
    """Ledger entries produced by one upload of a logical source."""

    batch_id: str
    account_id: str
    source_identity: str
    entry_ids: tuple[str, ...]
    created_at: datetime
    status: BatchStatus = BatchStatus.ACTIVE
    replaced_batch_id: str | None = None
    superseded_at: datetime | None = None
