"""Kafka sink for publishing ledger events."""

import json
import time
from dataclasses import dataclass
from typing import Any

from confluent_kafka import KafkaException, Producer

from yield_ledger.config import KafkaConfig
from yield_ledger.exceptions import SinkError
from yield_ledger.logging import get_logger
from yield_ledger.sinks.serialization import to_dict

logger = get_logger(__name__)


@dataclass
class ProducerStats:
    """Track producer delivery statistics."""

    sent: int = 0
    delivered: int = 0
    failed: int = 0
    start_time: float | None = None

    @property
    def success_rate(self) -> float:
        """Calculate success rate."""
        total = self.delivered + self.failed
        return self.delivered / total if total > 0 else 0.0


class KafkaSink:
    """Publish ledger events to Kafka, keyed by the affected account."""

    def __init__(self, config: KafkaConfig | str) -> None:
        """Initialize Kafka sink.

        Parameters
        ----------
        config : KafkaConfig | str
            Producer configuration or bootstrap servers string.
        """
        if isinstance(config, str):
            config = KafkaConfig(bootstrap_servers=config)

        self.config = config
        self.producer = Producer(config.to_dict())
        self.stats = ProducerStats(start_time=time.time())

    def _delivery_callback(self, err: Any, msg: Any) -> None:
        """Handle delivery reports."""
        if err:
            self.stats.failed += 1
            logger.error("Delivery failed: %s", err)
        else:
            self.stats.delivered += 1
            logger.debug("Delivered to %s[%d]@%d", msg.topic(), msg.partition(), msg.offset())

    @staticmethod
    def _get_key(event: Any) -> str | None:
        """Account id of an event envelope or record."""
        if isinstance(event, dict):
            return event.get("subject") or event.get("account_id")
        return getattr(event, "subject", None) or getattr(event, "account_id", None)

    def publish(self, topic: str, event: Any, key: str | None = None) -> None:
        """Send one event to a topic.

        Raises
        ------
        SinkError
            If the local producer queue is full or the producer rejects the
            message.
        """
        value = json.dumps(to_dict(event), ensure_ascii=False, default=str).encode("utf-8")
        if key is None:
            key = self._get_key(event)

        try:
            self.producer.produce(
                topic=topic,
                key=key.encode("utf-8") if key else None,
                value=value,
                callback=self._delivery_callback,
            )
        except (BufferError, KafkaException) as e:
            self.stats.failed += 1
            raise SinkError(f"Cannot publish to {topic}: {e}") from e
        self.stats.sent += 1
        self.producer.poll(0)

    def flush(self, timeout: float = 30.0) -> int:
        """Flush pending messages; returns the number still queued."""
        remaining = self.producer.flush(timeout)
        if remaining:
            logger.warning("%d messages still queued after flush", remaining)
        return remaining

    def close(self) -> None:
        """Flush and close the producer."""
        self.flush()
        logger.info(
            "Kafka sink closed: sent=%d, delivered=%d, failed=%d",
            self.stats.sent,
            self.stats.delivered,
            self.stats.failed,
        )
