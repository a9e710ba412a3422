"""Sample data generators."""

from yield_ledger.generators.rows import SampleRowGenerator

__all__ = ["SampleRowGenerator"]
