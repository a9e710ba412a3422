"""JSON Lines sink for keeping ledger events in local files."""

import json
from pathlib import Path
from typing import Any

from yield_ledger.exceptions import SinkError
from yield_ledger.logging import get_logger
from yield_ledger.sinks.serialization import to_dict

logger = get_logger(__name__)


class JsonLinesSink:
    """Append ledger events to one ``.jsonl`` file per topic."""

    def __init__(self, output_dir: str | Path) -> None:
        """Initialize JSON Lines sink.

        Parameters
        ----------
        output_dir : str | Path
            Directory to write ``<topic>.jsonl`` files into.
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self._counts: dict[str, int] = {}

    def path_for(self, topic: str) -> Path:
        """File that events of a topic are appended to."""
        # ledger.import-batches -> ledger_import-batches.jsonl
        return self.output_dir / (topic.replace(".", "_") + ".jsonl")

    def publish(self, topic: str, event: Any) -> None:
        """Append one event as a JSON line."""
        line = json.dumps(to_dict(event), ensure_ascii=False, default=str)
        try:
            with open(self.path_for(topic), "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            raise SinkError(f"Cannot write event to {self.path_for(topic)}: {e}") from e
        self._counts[topic] = self._counts.get(topic, 0) + 1

    def close(self) -> None:
        """Log a summary of written events."""
        for topic, count in self._counts.items():
            logger.info("%s: %d events written to %s", topic, count, self.path_for(topic))
