"""Sinks for publishing ledger events."""

from yield_ledger.sinks.json_file import JsonLinesSink
from yield_ledger.sinks.kafka import KafkaSink

__all__ = ["JsonLinesSink", "KafkaSink"]
