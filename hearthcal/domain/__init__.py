"""Query, backfill and drift detection built on the calendar primitives."""

from .backfill import BackfillOptions, BackfillSummary, canonicalize_row, run_backfill
from .drift_detector import DriftDetector, DriftReport
from .query_engine import QueryConfig, QueryEngine

__all__ = [
    "BackfillOptions",
    "BackfillSummary",
    "DriftDetector",
    "DriftReport",
    "QueryConfig",
    "QueryEngine",
    "canonicalize_row",
    "run_backfill",
]
