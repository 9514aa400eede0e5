"""
Timeline Writer - Renders correlated timeline entities as delimited records.
"""

import csv
import logging
from typing import Dict, Iterable, List, TextIO

from collectors.shimcache_claw import ProgramEntry
from timeline.correlation.correlation_engine import (
    Exact,
    Range,
    RangeEnd,
    RangeStart,
    TimelineEntity,
    TimestampKind,
)
from utils.time_utils import format_filetime_rfc3339, format_rfc3339

logger = logging.getLogger(__name__)

FIELDNAMES = [
    'timestamp',
    'timestamp_type',
    'source',
    'shimcache_position',
    'shimcache_timestamp',
    'amcache_timestamp',
    'description',
    'hive',
]

SOURCE_SHIMCACHE = 'shimcache'
SOURCE_AMCACHE = 'amcache'


def describe_bound(entity: TimelineEntity) -> str:
    timestamp = entity.timestamp
    if isinstance(timestamp, Range):
        return f"between {format_rfc3339(timestamp.from_)} and {format_rfc3339(timestamp.to)}"
    if isinstance(timestamp, RangeStart):
        return f"after {format_rfc3339(timestamp.timestamp)}"
    if isinstance(timestamp, RangeEnd):
        return f"before {format_rfc3339(timestamp.timestamp)}"
    return ""


def describe_entity(entity: TimelineEntity) -> str:
    """Free-text description of the program or file behind an entity."""
    entry = entity.shimcache_entry
    if entry is None:
        return "Shimcache last update time"

    if isinstance(entry.program, ProgramEntry):
        description = f"Program: {entry.program.name}"
    else:
        description = entry.program.path
    if entry.executed:
        description += " (executed)"

    bound = describe_bound(entity)
    if bound:
        description += f" [{bound}]"
    return description


def format_shimcache_timestamp(entry) -> str:
    """ShimCache FILETIME at full 100ns resolution, empty when absent."""
    if entry is None:
        return ''
    if entry.last_modified_filetime is not None:
        return format_filetime_rfc3339(entry.last_modified_filetime)
    return format_rfc3339(entry.last_modified)


def describe_amcache(entity: TimelineEntity) -> str:
    if entity.amcache_file is not None:
        return f"Amcache file entry: {entity.amcache_file.path}"
    if entity.amcache_program is not None:
        return f"Amcache program entry: {entity.amcache_program.program_name}"
    return ""


class TimelineWriter:
    """
    Writes timeline entities to a text sink, one row per entity.

    Entities confirmed by AmCache get a second row carrying the AmCache
    timestamp with source ``amcache``.
    """

    def __init__(self, sink: TextIO, delimiter: str = ';'):
        """
        Args:
            sink: Writable text stream
            delimiter: Field delimiter
        """
        self.sink = sink
        self.writer = csv.DictWriter(sink, fieldnames=FIELDNAMES, delimiter=delimiter,
                                     lineterminator='\n', extrasaction='ignore')
        self._header_written = False

    def write_header(self):
        if not self._header_written:
            self.writer.writeheader()
            self._header_written = True

    def rows_for(self, entity: TimelineEntity, hive: str = '') -> List[Dict[str, str]]:
        """
        Build the output rows for one entity.

        Args:
            entity: Entity to render
            hive: Source SYSTEM hive, written to every row
        """
        entry = entity.shimcache_entry
        timestamp = entity.timestamp
        base = {
            'shimcache_position': str(entry.position) if entry is not None else '',
            'shimcache_timestamp': format_shimcache_timestamp(entry),
            'amcache_timestamp': format_rfc3339(entity.amcache_timestamp),
            'hive': hive,
        }

        row = dict(base)
        if isinstance(timestamp, Exact) and timestamp.kind is TimestampKind.PATTERN_MATCH:
            # Pattern anchors carry the entry's own FILETIME
            row['timestamp'] = base['shimcache_timestamp']
        elif isinstance(timestamp, Exact):
            row['timestamp'] = format_rfc3339(timestamp.timestamp)
        else:
            row['timestamp'] = ''
        row['timestamp_type'] = timestamp.label if timestamp is not None else ''
        row['source'] = SOURCE_SHIMCACHE
        row['description'] = describe_entity(entity)
        rows = [row]

        if entity.amcache_confirmed:
            amcache_row = dict(base)
            amcache_row['timestamp'] = format_rfc3339(entity.amcache_timestamp)
            amcache_row['timestamp_type'] = 'Amcache key last modified'
            amcache_row['source'] = SOURCE_AMCACHE
            amcache_row['description'] = describe_amcache(entity)
            rows.append(amcache_row)
        return rows

    def write(self, entities: Iterable[TimelineEntity], hive: str = '') -> int:
        """
        Write the header (once) and every entity.

        Args:
            entities: Correlated timeline of one SYSTEM hive
            hive: Name or path of that hive, so rows from several hives
                sharing one sink stay attributable

        Returns:
            Number of rows written, header excluded
        """
        self.write_header()
        count = 0
        for entity in entities:
            for row in self.rows_for(entity, hive):
                self.writer.writerow(row)
                count += 1
        logger.debug(f"Wrote {count} timeline rows for {hive or 'unnamed hive'}")
        return count
