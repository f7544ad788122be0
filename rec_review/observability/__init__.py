"""
Observability layer for the review engine.

This module provides metrics collection, quality checks, and reporting.

Main exports:
- LifecycleMetrics: Counters for one service instance
- LifecycleQualityChecker: Runs data quality checks on the store
- QualityCheckResult: Result of a quality check
- StatusReporter: Generates Markdown reports
"""
from .metrics import LifecycleMetrics
from .quality_checks import LifecycleQualityChecker, QualityCheckResult
from .reporter import StatusReporter

__all__ = [
    "LifecycleMetrics",
    "LifecycleQualityChecker",
    "QualityCheckResult",
    "StatusReporter",
]
