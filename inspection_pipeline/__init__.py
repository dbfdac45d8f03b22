"""Inspection report pipeline: job orchestration and usage ledger."""

__version__ = "0.1.0"
