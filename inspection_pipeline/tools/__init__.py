"""Integrations with services outside the pipeline."""

from .executor import StageExecutorClient

__all__ = ["StageExecutorClient"]
