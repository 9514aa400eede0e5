"""
Correlation Engine - Infers execution time bounds for ShimCache entries.

ShimCache keeps its entries in recency order but rarely carries a trustworthy
execution timestamp; AmCache has precise timestamps but does not cover every
cached program. This module fuses the two: entries matching investigator
supplied patterns become exact anchors, every other entry gets bounded by its
neighbouring anchors, and AmCache records whose timestamps fall inside such a
bound become new anchors for a second, tighter pass.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Sequence, Union

from collectors.amcache_claw import AmcacheArtifact, AmcacheFileArtifact, AmcacheProgramArtifact
from collectors.shimcache_claw import ExecutableEntry, ProgramEntry, ShimCacheEntry
from utils.error_handler import CorrelationError, NoPatternsError, PatternCompileError

logger = logging.getLogger(__name__)


class TimestampKind(Enum):
    """Where an exact timeline timestamp came from."""
    SHIMCACHE_LAST_UPDATE = "Shimcache last update"
    PATTERN_MATCH = "Pattern match"
    NEAR_TS_MATCH = "Near timestamp pair"
    AMCACHE_RANGE_MATCH = "Amcache range match"


@dataclass(frozen=True)
class Exact:
    """A trustworthy single instant."""
    timestamp: datetime
    kind: TimestampKind

    @property
    def label(self) -> str:
        return self.kind.value

    def contains(self, ts: datetime) -> bool:
        return ts == self.timestamp


@dataclass(frozen=True)
class Range:
    """
    Bounded between two anchors; ``from_`` is the older bound.

    ``from_ >= to`` can happen with non-monotonic clock data and is left
    for the consumer to flag rather than raised.
    """
    from_: datetime
    to: datetime

    @property
    def label(self) -> str:
        return "Range"

    @property
    def is_contradictory(self) -> bool:
        return self.from_ >= self.to

    def contains(self, ts: datetime) -> bool:
        return self.from_ <= ts <= self.to

    def strictly_contains(self, ts: datetime) -> bool:
        return self.from_ < ts < self.to


@dataclass(frozen=True)
class RangeStart:
    """Entry is at least as recent as ``timestamp`` (before the first anchor)."""
    timestamp: datetime

    @property
    def label(self) -> str:
        return "Range start"

    def contains(self, ts: datetime) -> bool:
        return ts >= self.timestamp

    def strictly_contains(self, ts: datetime) -> bool:
        return ts > self.timestamp


@dataclass(frozen=True)
class RangeEnd:
    """Entry is no more recent than ``timestamp`` (after the last anchor)."""
    timestamp: datetime

    @property
    def label(self) -> str:
        return "Range end"

    def contains(self, ts: datetime) -> bool:
        return ts <= self.timestamp

    def strictly_contains(self, ts: datetime) -> bool:
        return ts < self.timestamp


TimelineTimestamp = Union[Exact, Range, RangeStart, RangeEnd]


@dataclass
class TimelineEntity:
    """
    One row of the correlated timeline.

    The first entity of a timeline is synthetic: it has no ShimCache entry
    and holds the cache's own last-update time.
    """
    shimcache_entry: Optional[ShimCacheEntry] = None
    timestamp: Optional[TimelineTimestamp] = None
    amcache_file: Optional[AmcacheFileArtifact] = None
    amcache_program: Optional[AmcacheProgramArtifact] = None
    amcache_confirmed: bool = False

    @property
    def is_anchor(self) -> bool:
        return isinstance(self.timestamp, Exact)

    @property
    def amcache_timestamp(self) -> Optional[datetime]:
        """Key last-written time of the attached AmCache record, if any."""
        if self.amcache_file is not None:
            return self.amcache_file.key_last_modified_ts
        if self.amcache_program is not None:
            return self.amcache_program.key_last_modified_ts
        return None


def compile_patterns(patterns: Sequence[str]) -> List[Pattern]:
    """
    Compile the identification patterns in the order given.

    Raises:
        NoPatternsError: If no patterns were supplied
        PatternCompileError: On the first invalid pattern
    """
    if not patterns:
        raise NoPatternsError()
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            raise PatternCompileError(pattern, e)
    return compiled


def exact_indices(entities: Sequence[TimelineEntity]) -> List[int]:
    """Indices of entities holding an Exact timestamp."""
    return [i for i, entity in enumerate(entities) if entity.is_anchor]


def _anchor_timestamp(entities: Sequence[TimelineEntity], index: int) -> datetime:
    timestamp = entities[index].timestamp
    if not isinstance(timestamp, Exact):
        raise CorrelationError(f"Timeline entity {index} is used as an anchor without an exact timestamp")
    return timestamp.timestamp


def set_timestamp_ranges(anchor_indices: Iterable[int], entities: List[TimelineEntity]):
    """
    Bound every non-anchor entity by its neighbouring anchors.

    Increasing index means decreasing recency, so between anchors ``a < b``
    the later index supplies the lower bound. Entities at anchor indices are
    left untouched. Running this twice with the same anchors changes nothing.

    Args:
        anchor_indices: Indices of entities holding Exact timestamps
        entities: Timeline to update in place
    """
    anchors = sorted(set(anchor_indices))
    if not anchors:
        return

    first = anchors[0]
    if first > 0:
        bound = RangeStart(_anchor_timestamp(entities, first))
        for i in range(0, first):
            entities[i].timestamp = bound

    for start, end in zip(anchors, anchors[1:]):
        bound = Range(
            from_=_anchor_timestamp(entities, end),
            to=_anchor_timestamp(entities, start),
        )
        for i in range(start + 1, end):
            entities[i].timestamp = bound

    last = anchors[-1]
    if last + 1 < len(entities):
        bound = RangeEnd(_anchor_timestamp(entities, last))
        for i in range(last + 1, len(entities)):
            entities[i].timestamp = bound


def _within_bound(timestamp: Optional[TimelineTimestamp], ts: datetime) -> bool:
    if isinstance(timestamp, (Range, RangeStart, RangeEnd)):
        return timestamp.strictly_contains(ts)
    return False


class CorrelationEngine:
    """
    Builds a ShimCache timeline anchored by pattern matches and AmCache.

    Usage:
        engine = CorrelationEngine([r"(?i)\\\\patch\\.exe$"])
        entities = engine.correlate(shimcache.entries, shimcache.last_update_ts, amcache)
    """

    DEFAULT_NEAR_PAIR_WINDOW = timedelta(minutes=1)

    def __init__(self, patterns: Sequence[str], near_pair_matching: bool = False,
                 near_pair_window: timedelta = DEFAULT_NEAR_PAIR_WINDOW):
        """
        Initialize the correlation engine.

        Args:
            patterns: Regular expressions tested against executable paths and
                      program names, in priority order
            near_pair_matching: Also anchor entries whose ShimCache timestamp is
                                within ``near_pair_window`` of their AmCache record
            near_pair_window: Maximum distance for a near timestamp pair

        Raises:
            NoPatternsError, PatternCompileError
        """
        self.patterns = compile_patterns(patterns)
        self.near_pair_matching = near_pair_matching
        self.near_pair_window = near_pair_window

    def correlate(self, shimcache_entries: Sequence[ShimCacheEntry], cache_last_update: datetime,
                  amcache: Optional[AmcacheArtifact] = None) -> Optional[List[TimelineEntity]]:
        """
        Correlate ShimCache entries with pattern anchors and AmCache records.

        Args:
            shimcache_entries: Entries in on-disk order
            cache_last_update: Last-written time of the AppCompatCache key
            amcache: Decoded AmCache, optional

        Returns:
            Timeline entities, synthetic cache-update entity first, or None
            when no entry matched a pattern with a usable timestamp
        """
        entities = [TimelineEntity(timestamp=Exact(cache_last_update, TimestampKind.SHIMCACHE_LAST_UPDATE))]
        entities.extend(TimelineEntity(shimcache_entry=entry) for entry in shimcache_entries)

        pattern_anchors = self.match_patterns(entities)
        if not pattern_anchors:
            logger.warning("0 pattern matching entries found from shimcache")
            return None
        logger.info(f"{len(pattern_anchors)} pattern matching entries found from shimcache")

        set_timestamp_ranges(exact_indices(entities), entities)

        if amcache is not None:
            paths, names = self._index_entities(entities)
            self.attach_amcache(entities, amcache, paths, names)

            if self.near_pair_matching:
                self.match_near_pairs(entities)
                set_timestamp_ranges(exact_indices(entities), entities)

            confirmed = self.match_amcache_ranges(entities, amcache, paths, names)
            logger.info(f"{confirmed} timestamp range matches found from amcache")
            set_timestamp_ranges(exact_indices(entities), entities)

        contradictory = sum(
            1 for e in entities if isinstance(e.timestamp, Range) and e.timestamp.is_contradictory
        )
        if contradictory:
            logger.warning(f"{contradictory} timeline entities have contradictory ranges (from >= to)")
        return entities

    def match_patterns(self, entities: List[TimelineEntity]) -> List[int]:
        """
        Mark pattern-matching entries with a timestamp as exact anchors.

        The first matching pattern decides; a match on an entry without a
        timestamp yields no anchor.

        Returns:
            Indices of the new anchors
        """
        anchors = []
        for i, entity in enumerate(entities):
            entry = entity.shimcache_entry
            if entry is None:
                continue
            subject = entry.path_or_name
            for pattern in self.patterns:
                if pattern.search(subject) is None:
                    continue
                if entry.last_modified is not None:
                    entity.timestamp = Exact(entry.last_modified, TimestampKind.PATTERN_MATCH)
                    anchors.append(i)
                else:
                    logger.debug(f"Pattern {pattern.pattern!r} matched {subject!r} which has no timestamp")
                break
        return anchors

    @staticmethod
    def _index_entities(entities: Sequence[TimelineEntity]):
        """First entity index per lower-cased executable path and per program name."""
        paths: Dict[str, int] = {}
        names: Dict[str, int] = {}
        for i, entity in enumerate(entities):
            entry = entity.shimcache_entry
            if entry is None:
                continue
            if isinstance(entry.program, ExecutableEntry):
                paths.setdefault(entry.program.path.lower(), i)
            elif isinstance(entry.program, ProgramEntry):
                names.setdefault(entry.program.name, i)
        return paths, names

    def attach_amcache(self, entities: List[TimelineEntity], amcache: AmcacheArtifact,
                       paths: Dict[str, int], names: Dict[str, int]):
        """Attach the first matching AmCache record to each entity."""
        attached = 0
        for file_artifact in amcache.iter_files():
            index = paths.get(file_artifact.path.lower())
            if index is not None and entities[index].amcache_file is None:
                entities[index].amcache_file = file_artifact
                attached += 1
        for program in amcache.program_entries:
            index = names.get(program.program_name)
            if index is not None and entities[index].amcache_program is None:
                entities[index].amcache_program = program
                attached += 1
        logger.debug(f"{attached} amcache records matched shimcache entries")

    def match_near_pairs(self, entities: List[TimelineEntity]):
        """Anchor entries whose ShimCache and AmCache file timestamps nearly coincide."""
        near_count = 0
        overlap_count = 0
        for entity in entities:
            entry = entity.shimcache_entry
            if entry is None or entity.amcache_file is None or entry.last_modified is None:
                continue
            amcache_ts = entity.amcache_file.key_last_modified_ts
            if abs(entry.last_modified - amcache_ts) > self.near_pair_window:
                continue
            near_count += 1
            # Do not overwrite pattern matched timestamps
            if isinstance(entity.timestamp, Exact) and entity.timestamp.kind is TimestampKind.PATTERN_MATCH:
                overlap_count += 1
                continue
            entity.timestamp = Exact(amcache_ts, TimestampKind.NEAR_TS_MATCH)
        logger.info(
            f"{near_count} near shimcache & amcache timestamp pairs found "
            f"(with {overlap_count} overlapping the pattern matched entries)"
        )

    def match_amcache_ranges(self, entities: List[TimelineEntity], amcache: AmcacheArtifact,
                             paths: Dict[str, int], names: Dict[str, int]) -> int:
        """
        Promote entities whose bound strictly contains a matching AmCache timestamp.

        Returns:
            Number of promoted entities
        """
        confirmed = 0
        for file_artifact in amcache.iter_files():
            index = paths.get(file_artifact.path.lower())
            if index is None:
                continue
            entity = entities[index]
            if _within_bound(entity.timestamp, file_artifact.key_last_modified_ts):
                entity.timestamp = Exact(file_artifact.key_last_modified_ts, TimestampKind.AMCACHE_RANGE_MATCH)
                entity.amcache_file = file_artifact
                entity.amcache_confirmed = True
                confirmed += 1
        for program in amcache.program_entries:
            index = names.get(program.program_name)
            if index is None:
                continue
            entity = entities[index]
            if _within_bound(entity.timestamp, program.key_last_modified_ts):
                entity.timestamp = Exact(program.key_last_modified_ts, TimestampKind.AMCACHE_RANGE_MATCH)
                entity.amcache_program = program
                entity.amcache_confirmed = True
                confirmed += 1
        return confirmed


def correlate(shimcache_entries: Sequence[ShimCacheEntry], cache_last_update: datetime,
              amcache: Optional[AmcacheArtifact], patterns: Sequence[str],
              near_pair_matching: bool = False) -> Optional[List[TimelineEntity]]:
    """Convenience wrapper around CorrelationEngine.correlate."""
    engine = CorrelationEngine(patterns, near_pair_matching=near_pair_matching)
    return engine.correlate(shimcache_entries, cache_last_update, amcache)
