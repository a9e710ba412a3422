"""Tests for event sinks and serialization."""

import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from confluent_kafka import KafkaException

from yield_ledger.config import KafkaConfig
from yield_ledger.exceptions import SinkError
from yield_ledger.models import Event
from yield_ledger.models.ledger import EntryKind
from yield_ledger.sinks.json_file import JsonLinesSink
from yield_ledger.sinks.kafka import KafkaSink, ProducerStats
from yield_ledger.sinks.serialization import serialize_value, to_dict


def make_event(subject: str = "acct-001") -> Event:
    return Event(
        event_id="evt-1",
        event_type="accrual.applied",
        event_time=datetime(2024, 2, 15, 9, 30),
        source="yield-ledger",
        subject=subject,
        data={"amount": Decimal("10.00"), "period_end": date(2024, 2, 15)},
    )


class TestSerialization:
    """Tests for serialization helpers."""

    def test_serialize_values(self) -> None:
        """Test money, enums and dates become JSON friendly."""
        assert serialize_value(Decimal("10.50")) == "10.50"
        assert serialize_value(EntryKind.BONUS) == "BONUS"
        assert serialize_value(date(2024, 1, 15)) == "2024-01-15"
        assert serialize_value(datetime(2024, 1, 15, 8, 0)) == "2024-01-15T08:00:00"
        assert serialize_value(frozenset({"b", "a"})) == ["a", "b"]
        assert serialize_value((Decimal("1.00"), 2)) == ["1.00", 2]

    def test_event_to_dict(self) -> None:
        """Test events serialize with nested data."""
        result = to_dict(make_event())

        assert result["subject"] == "acct-001"
        assert result["event_time"] == "2024-02-15T09:30:00"
        assert result["data"] == {"amount": "10.00", "period_end": "2024-02-15"}

    def test_to_dict_other_type(self) -> None:
        """Test non-dataclass values are wrapped."""
        @dataclass
        class Box:
            value: Decimal

        assert to_dict(Box(Decimal("1.10"))) == {"value": "1.10"}
        assert to_dict(42) == {"value": "42"}


class TestJsonLinesSink:
    """Tests for JsonLinesSink."""

    def test_publish_appends(self, tmp_path: Path) -> None:
        """Test events are appended one per line per topic."""
        sink = JsonLinesSink(tmp_path / "events")

        sink.publish("ledger.accruals", make_event())
        sink.publish("ledger.accruals", make_event("acct-002"))
        sink.close()

        path = sink.path_for("ledger.accruals")
        lines = path.read_text(encoding="utf-8").splitlines()
        assert path.name == "ledger_accruals.jsonl"
        assert [json.loads(line)["subject"] for line in lines] == ["acct-001", "acct-002"]
        assert sink._counts == {"ledger.accruals": 2}

    def test_write_failure(self, tmp_path: Path) -> None:
        """Test an unwritable target raises SinkError."""
        sink = JsonLinesSink(tmp_path)
        sink.path_for("ledger.accruals").mkdir()

        with pytest.raises(SinkError):
            sink.publish("ledger.accruals", make_event())


class TestProducerStats:
    """Tests for ProducerStats."""

    def test_success_rate(self) -> None:
        """Test success rate over acknowledged messages."""
        assert ProducerStats(sent=10, delivered=9, failed=1).success_rate == 0.9
        assert ProducerStats().success_rate == 0.0


class TestKafkaSinkMocked:
    """Tests for KafkaSink using mocks (no actual Kafka connection)."""

    @patch("yield_ledger.sinks.kafka.Producer")
    def test_init_with_string(self, mock_producer_class: MagicMock) -> None:
        """Test initialization from a bootstrap string."""
        sink = KafkaSink("kafka:9092")

        assert sink.config.bootstrap_servers == "kafka:9092"
        expected = KafkaConfig(bootstrap_servers="kafka:9092").to_dict()
        mock_producer_class.assert_called_once_with(expected)

    @patch("yield_ledger.sinks.kafka.Producer")
    def test_publish_keys_by_subject(self, mock_producer_class: MagicMock) -> None:
        """Test events are keyed by the affected account."""
        mock_producer = mock_producer_class.return_value
        sink = KafkaSink("localhost:9092")

        sink.publish("ledger.accruals", make_event())

        kwargs = mock_producer.produce.call_args.kwargs
        assert kwargs["topic"] == "ledger.accruals"
        assert kwargs["key"] == b"acct-001"
        assert json.loads(kwargs["value"])["data"]["amount"] == "10.00"
        mock_producer.poll.assert_called_once_with(0)
        assert sink.stats.sent == 1

    @patch("yield_ledger.sinks.kafka.Producer")
    def test_publish_dict_without_key(self, mock_producer_class: MagicMock) -> None:
        """Test a record without an account is sent unkeyed."""
        mock_producer = mock_producer_class.return_value
        sink = KafkaSink("localhost:9092")

        sink.publish("ledger.misc", {"id": 1})

        assert mock_producer.produce.call_args.kwargs["key"] is None

    @pytest.mark.parametrize("error", [BufferError("queue full"), KafkaException("broker down")])
    @patch("yield_ledger.sinks.kafka.Producer")
    def test_publish_failure(self, mock_producer_class: MagicMock, error: Exception) -> None:
        """Test producer errors raise SinkError."""
        mock_producer_class.return_value.produce.side_effect = error
        sink = KafkaSink("localhost:9092")

        with pytest.raises(SinkError):
            sink.publish("ledger.accruals", make_event())

        assert sink.stats.failed == 1
        assert sink.stats.sent == 0

    @patch("yield_ledger.sinks.kafka.Producer")
    def test_delivery_callback(self, mock_producer_class: MagicMock) -> None:
        """Test delivery reports update the stats."""
        sink = KafkaSink("localhost:9092")
        msg = MagicMock()
        msg.topic.return_value = "ledger.accruals"
        msg.partition.return_value = 0
        msg.offset.return_value = 12

        sink._delivery_callback(None, msg)
        sink._delivery_callback("timed out", msg)

        assert sink.stats.delivered == 1
        assert sink.stats.failed == 1

    @patch("yield_ledger.sinks.kafka.Producer")
    def test_flush_and_close(self, mock_producer_class: MagicMock) -> None:
        """Test flush reports messages left in the queue."""
        mock_producer = mock_producer_class.return_value
        mock_producer.flush.return_value = 2
        sink = KafkaSink("localhost:9092")

        assert sink.flush(timeout=1.0) == 2
        sink.close()

        assert mock_producer.flush.call_count == 2
