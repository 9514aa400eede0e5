"""
Timeline Correlation Engine

This module infers execution time bounds for ShimCache entries from
pattern-matched anchors and AmCache timestamps.
"""

from .correlation_engine import (
    CorrelationEngine,
    Exact,
    Range,
    RangeEnd,
    RangeStart,
    TimelineEntity,
    TimestampKind,
    compile_patterns,
    correlate,
    exact_indices,
    set_timestamp_ranges,
)

__all__ = [
    'CorrelationEngine',
    'Exact',
    'Range',
    'RangeEnd',
    'RangeStart',
    'TimelineEntity',
    'TimestampKind',
    'compile_patterns',
    'correlate',
    'exact_indices',
    'set_timestamp_ranges',
]
