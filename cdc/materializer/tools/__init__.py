"""
CLI tools for CDC materializer administration.

This module provides command-line tools for:
- inspect: Show materialized documents, known schema and schema history

Invariants:
    - Tools work offline (no running materializer required)
    - Tools never modify the store
"""

from .inspect_cli import InspectCLI

__all__ = ["InspectCLI"]
