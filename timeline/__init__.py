"""
ShimCache Timeline Module

Correlates ShimCache entries with pattern anchors and AmCache records and
writes the resulting timeline as delimited text.
"""

__version__ = "1.0.0"

from .correlation import CorrelationEngine, TimelineEntity, TimestampKind, correlate
from .timeline_writer import TimelineWriter

__all__ = ['CorrelationEngine', 'TimelineEntity', 'TimestampKind', 'TimelineWriter', 'correlate']
