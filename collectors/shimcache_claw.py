"""
ShimCache Parser

Decodes the Windows ShimCache (Application Compatibility Cache) blob stored in
the SYSTEM hive under ``ControlSet00N\\Control\\Session Manager\\AppCompatCache``.

Features:
- Detects the cache layout from the blob signature and the "10ts" markers
- Decodes the Windows 7 (32-bit and 64-bit) and Windows 10/11 layouts
- Classifies Windows 10 packaged-program descriptors apart from plain paths
- Fails with a typed error on truncated or malformed data instead of guessing

Entries keep their on-disk order: a lower position means the entry was
updated more recently than any entry with a higher position.
"""

import logging
import re
import struct
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import PureWindowsPath
from typing import List, Optional, Union

from collectors.hive_accessor import (
    ValueKind,
    control_set_name,
    current_control_set,
    is_32bit_architecture,
    require_key,
    require_value,
)
from utils.error_handler import (
    InvalidTimestampError,
    MalformedStringError,
    TruncatedError,
    UnsupportedVersionError,
)
from utils.time_utils import filetime_to_datetime

logger = logging.getLogger(__name__)


class ShimCacheVersion(Enum):
    """ShimCache layouts, labelled with the Windows releases that write them."""
    UNKNOWN = "Unknown"
    WINDOWS_XP = "Windows XP"
    WINDOWS_VISTA = "Windows Vista, Windows Server 2003 or Windows Server 2008"
    WINDOWS_7_X64 = "Windows 7 64-bit or Windows Server 2008 R2"
    WINDOWS_7_X86 = "Windows 7 32-bit"
    WINDOWS_8 = "Windows 8 or Windows Server 2012"
    WINDOWS_8_1 = "Windows 8.1 or Windows Server 2012 R2"
    WINDOWS_10 = "Windows 10"
    WINDOWS_10_CREATORS = "Windows 10 Creators"


UNSUPPORTED_VERSIONS = frozenset({
    ShimCacheVersion.UNKNOWN,
    ShimCacheVersion.WINDOWS_XP,
    ShimCacheVersion.WINDOWS_VISTA,
    ShimCacheVersion.WINDOWS_8,
    ShimCacheVersion.WINDOWS_8_1,
})


class CPUArchitecture(Enum):
    """Machine types found in packaged-program descriptors."""
    AMD64 = 0x8664
    ARM = 0x01c4
    I386 = 0x014c
    IA64 = 0x0200


@dataclass(frozen=True)
class ExecutableEntry:
    """A cache row naming a file on disk."""
    path: str


@dataclass(frozen=True)
class ProgramEntry:
    """
    A cache row holding a packaged-program descriptor (Windows 10 only).

    Attributes:
        name: Program name taken from the descriptor
        raw_descriptor: The descriptor string exactly as stored
        unknown_u32: Leading 8 hex digits, meaning unknown
        program_version: Dotted program version, e.g. ``1.2.3.4``
        sdk_version: Dotted SDK version
        architecture_id: Machine type number from the descriptor
        publisher_id: Publisher identifier
        neutral: True when the descriptor ends with ``neutral``
    """
    name: str
    raw_descriptor: str
    unknown_u32: str = ""
    program_version: str = ""
    sdk_version: str = ""
    architecture_id: int = 0
    publisher_id: str = ""
    neutral: bool = False

    @property
    def architecture(self) -> Optional[CPUArchitecture]:
        """Known architecture, or None for an unrecognised machine type."""
        try:
            return CPUArchitecture(self.architecture_id)
        except ValueError:
            return None


@dataclass(frozen=True)
class ShimCacheEntry:
    """
    A single ShimCache row.

    Attributes:
        position: Ordinal index in on-disk order (0 = most recent)
        program: ExecutableEntry or ProgramEntry
        last_modified: File last-modified time, None when absent
        executed: Insert-flag execution bit (Windows 7 only)
        raw_payload: Shim data, kept but not interpreted
        control_set: Control set the blob was read from
        path_size: Declared byte length of the path
        data_size: Declared byte length of the payload
        signature: Record signature ("10ts") for layouts that have one
        last_modified_filetime: Raw FILETIME ticks behind ``last_modified``,
            which keep the 100ns resolution a datetime cannot hold
    """
    position: int
    program: Union[ExecutableEntry, ProgramEntry]
    last_modified: Optional[datetime] = None
    executed: Optional[bool] = None
    raw_payload: Optional[bytes] = field(default=None, repr=False)
    control_set: int = 0
    path_size: int = 0
    data_size: Optional[int] = None
    signature: Optional[str] = None
    last_modified_filetime: Optional[int] = None

    @property
    def path_or_name(self) -> str:
        if isinstance(self.program, ExecutableEntry):
            return self.program.path
        return self.program.name

    @property
    def filename(self) -> str:
        """File name portion of an executable path, or the program name."""
        if isinstance(self.program, ExecutableEntry):
            return PureWindowsPath(self.program.path).name or self.program.path
        return self.program.name

    def __str__(self):
        if self.last_modified is not None:
            return f"{self.position}:\t{self.last_modified.isoformat()}, {self.path_or_name}"
        return f"{self.position}:\t {self.path_or_name}"


@dataclass
class ShimCacheArtifact:
    """Everything read from one SYSTEM hive's AppCompatCache value."""
    entries: List[ShimCacheEntry]
    last_update_ts: datetime
    version: ShimCacheVersion
    control_set: int


PROGRAM_DESCRIPTOR_RE = re.compile(
    r"([0-9a-f]{8})\s+([0-9a-f]{16})\s+([0-9a-f]{16})\s+([0-9a-f]{4})\s+([\w.-]+)\s+(\w+)\s*(\w*)"
)


def _read(data: bytes, offset: int, size: int, position: Optional[int]) -> bytes:
    """Slice ``size`` bytes at ``offset`` or raise TruncatedError."""
    end = offset + size
    if offset < 0 or end > len(data):
        raise TruncatedError(position, offset, size, len(data))
    return data[offset:end]


def _decode_utf16(raw: bytes, position: Optional[int]) -> str:
    if len(raw) % 2:
        raise MalformedStringError(position, f"odd byte count {len(raw)}")
    try:
        return raw.decode('utf-16-le')
    except UnicodeDecodeError as e:
        raise MalformedStringError(position, str(e))


def _filetime(value: int, position: int) -> Optional[datetime]:
    try:
        return filetime_to_datetime(value)
    except InvalidTimestampError as e:
        raise InvalidTimestampError(f"{e} at entry position {position}")


def _version_from_hex(hex_str: str) -> str:
    """``"0001000200030004"`` -> ``"1.2.3.4"``"""
    return ".".join(str(int(hex_str[i:i + 4], 16)) for i in range(0, 16, 4))


def classify_path(path: str) -> Union[ExecutableEntry, ProgramEntry]:
    """
    Decide whether a Windows 10 cache path is a program descriptor.

    Args:
        path: Decoded path string from the record

    Returns:
        ProgramEntry for descriptor strings, ExecutableEntry otherwise
    """
    match = PROGRAM_DESCRIPTOR_RE.fullmatch(path)
    if match is None:
        return ExecutableEntry(path)
    return ProgramEntry(
        name=match.group(5),
        raw_descriptor=path,
        unknown_u32=match.group(1),
        program_version=_version_from_hex(match.group(2)),
        sdk_version=_version_from_hex(match.group(3)),
        architecture_id=int(match.group(4), 16),
        publisher_id=match.group(6),
        neutral=match.group(7) == "neutral",
    )


class ShimCacheParser:
    """
    Parser for the AppCompatCache binary value.

    The layout is chosen from the 4-byte signature at offset 0 and the
    4-byte marker at offset 128; the processor architecture only matters for
    the Windows 7 signature.
    """

    WINDOWS_XP_SIGNATURE = 0xDEADBEEF
    WINDOWS_VISTA_SIGNATURE = 0xBADC0FFE
    WINDOWS_7_SIGNATURE = 0xBADC0FEE
    WINDOWS_8_SIGNATURE = b"00ts"
    WINDOWS_10_SIGNATURE = b"10ts"  # also used by Windows 8.1
    WINDOWS_8_MARKER_OFFSET = 128
    WINDOWS_7_ENTRIES_OFFSET = 128
    WINDOWS_10_CREATORS_OFFSET = 0x34
    INSERT_FLAG_EXECUTED = 0x00000002

    # path size, max path size, padding, path offset, FILETIME,
    # insert flags, shim flags, data size, data offset
    WINDOWS_7_X64_RECORD = struct.Struct('<HH4xQQIIQQ')
    WINDOWS_7_X86_RECORD = struct.Struct('<HHIQIIII')

    def __init__(self, control_set: int = 0, is_32bit: bool = False):
        """
        Args:
            control_set: Active control set the blob came from
            is_32bit: True for x86 installations (Windows 7 layout only)
        """
        self.control_set = control_set
        self.is_32bit = is_32bit

    def detect_version(self, data: bytes) -> ShimCacheVersion:
        """
        Detect the cache layout.

        Args:
            data: Raw AppCompatCache value

        Returns:
            ShimCacheVersion: UNKNOWN when nothing matches
        """
        signature = struct.unpack('<I', _read(data, 0, 4, None))[0]

        if signature == self.WINDOWS_XP_SIGNATURE:
            return ShimCacheVersion.WINDOWS_XP
        if signature == self.WINDOWS_VISTA_SIGNATURE:
            return ShimCacheVersion.WINDOWS_VISTA
        if signature == self.WINDOWS_7_SIGNATURE:
            return ShimCacheVersion.WINDOWS_7_X86 if self.is_32bit else ShimCacheVersion.WINDOWS_7_X64

        marker = data[self.WINDOWS_8_MARKER_OFFSET:self.WINDOWS_8_MARKER_OFFSET + 4]
        if marker == self.WINDOWS_8_SIGNATURE:
            return ShimCacheVersion.WINDOWS_8
        if marker == self.WINDOWS_10_SIGNATURE:
            return ShimCacheVersion.WINDOWS_8_1

        # Windows 10 stores the offset to its first record in place of a signature
        offset_to_records = signature
        if data[offset_to_records:offset_to_records + 4] == self.WINDOWS_10_SIGNATURE:
            if offset_to_records == self.WINDOWS_10_CREATORS_OFFSET:
                return ShimCacheVersion.WINDOWS_10_CREATORS
            return ShimCacheVersion.WINDOWS_10

        return ShimCacheVersion.UNKNOWN

    def parse(self, data: bytes) -> List[ShimCacheEntry]:
        """
        Decode every entry of the blob.

        Args:
            data: Raw AppCompatCache value

        Returns:
            List[ShimCacheEntry]: Entries in on-disk (recency) order

        Raises:
            UnsupportedVersionError: XP, Vista, 8, 8.1 or unrecognised layouts
            TruncatedError: A field runs past the end of the buffer
            MalformedStringError: A path is not valid UTF-16LE
            InvalidTimestampError: A FILETIME does not fit in a datetime
        """
        version = self.detect_version(data)
        logger.debug(f"Detected shimcache version: {version.value}")

        if version in UNSUPPORTED_VERSIONS:
            raise UnsupportedVersionError(version.value)
        if version in (ShimCacheVersion.WINDOWS_10, ShimCacheVersion.WINDOWS_10_CREATORS):
            return self.parse_windows_10(data)
        if version is ShimCacheVersion.WINDOWS_7_X86:
            logger.warning("Windows 7 32-bit shimcache decoding is best effort")
        return self.parse_windows_7(data)

    def parse_windows_10(self, data: bytes) -> List[ShimCacheEntry]:
        """
        Parse the Windows 10/11 layout.

        Each record: "10ts", 4 unknown bytes, 4-byte entry size, 2-byte path
        size, UTF-16LE path, FILETIME, 4-byte data size, data. Decoding stops
        at the first record whose signature is not "10ts", including a tail
        too short to hold one.
        """
        entries = []
        index = struct.unpack('<I', _read(data, 0, 4, None))[0]
        position = 0

        while index < len(data):
            signature = data[index:index + 4]
            if signature != self.WINDOWS_10_SIGNATURE:
                logger.debug(f"Stopped at offset {index}, {len(data) - index} bytes after the last record")
                break
            index += 4
            index += 4  # unknown
            index += 4  # entry size, not needed for traversal
            path_size = struct.unpack('<H', _read(data, index, 2, position))[0]
            index += 2
            path = _decode_utf16(_read(data, index, path_size, position), position)
            index += path_size
            filetime = struct.unpack('<Q', _read(data, index, 8, position))[0]
            index += 8
            data_size = struct.unpack('<I', _read(data, index, 4, position))[0]
            index += 4
            payload = _read(data, index, data_size, position)
            index += data_size

            entries.append(ShimCacheEntry(
                position=position,
                program=classify_path(path),
                last_modified=_filetime(filetime, position),
                executed=None,
                raw_payload=payload,
                control_set=self.control_set,
                path_size=path_size,
                data_size=data_size,
                signature=signature.decode('ascii'),
                last_modified_filetime=filetime or None,
            ))
            position += 1

        logger.debug(f"Parsed {len(entries)} Windows 10 shimcache entries")
        return entries

    def parse_windows_7(self, data: bytes) -> List[ShimCacheEntry]:
        """
        Parse the Windows 7 layout.

        A 32-bit entry count sits at offset 4 and fixed-size records start at
        offset 128. Paths and payloads are stored elsewhere in the blob and
        referenced by offset from the blob start.

        Decoding ends after ``entry_count`` records, at the end of the buffer,
        or where the next record would start inside the path and payload
        area already referenced, whichever comes first. A declared count
        larger than the records present therefore yields the records present.
        """
        entries = []
        entry_count = struct.unpack('<I', _read(data, 4, 4, None))[0]
        if entry_count == 0:
            return entries

        record = self.WINDOWS_7_X86_RECORD if self.is_32bit else self.WINDOWS_7_X64_RECORD
        index = self.WINDOWS_7_ENTRIES_OFFSET
        # Lowest offset referenced by a decoded record's path or payload
        data_area_start = len(data)

        while index < data_area_start and len(entries) < entry_count:
            position = len(entries)
            (path_size, _max_path_size, path_offset, filetime,
             insert_flags, _shim_flags, data_size, data_offset) = record.unpack(
                _read(data, index, record.size, position))
            index += record.size

            path = _decode_utf16(_read(data, path_offset, path_size, position), position)
            path = path.replace('\\??\\', '')
            payload = _read(data, data_offset, data_size, position)

            if path_size:
                data_area_start = min(data_area_start, path_offset)
            if data_size:
                data_area_start = min(data_area_start, data_offset)

            entries.append(ShimCacheEntry(
                position=position,
                program=ExecutableEntry(path),
                last_modified=_filetime(filetime, position),
                executed=bool(insert_flags & self.INSERT_FLAG_EXECUTED),
                raw_payload=payload,
                control_set=self.control_set,
                path_size=path_size,
                data_size=data_size,
                last_modified_filetime=filetime or None,
            ))

        if len(entries) < entry_count:
            logger.warning(f"Shimcache header declares {entry_count} entries, "
                           f"only {len(entries)} records present")
        logger.debug(f"Parsed {len(entries)}/{entry_count} Windows 7 shimcache entries")
        return entries


def decode_shimcache(data: bytes, control_set: int = 0, is_32bit: bool = False) -> List[ShimCacheEntry]:
    """
    Decode a raw AppCompatCache blob.

    Args:
        data: Raw AppCompatCache value
        control_set: Active control set number
        is_32bit: True for x86 installations

    Returns:
        List[ShimCacheEntry]: Entries in on-disk order
    """
    return ShimCacheParser(control_set, is_32bit).parse(data)


def read_shimcache(hive) -> ShimCacheArtifact:
    """
    Locate and decode the ShimCache of a SYSTEM hive.

    Args:
        hive: Hive exposing ``get_key`` (see collectors.hive_accessor)

    Returns:
        ShimCacheArtifact: Entries plus the AppCompatCache key last-written time
    """
    control_set = current_control_set(hive)
    key_path = f"{control_set_name(control_set)}\\Control\\Session Manager\\AppCompatCache"
    key = require_key(hive, key_path)
    last_update_ts = key.last_written_time()
    data = require_value(key, key_path, "AppCompatCache", ValueKind.BINARY).data

    is_32bit = False
    if data[:4] == struct.pack('<I', ShimCacheParser.WINDOWS_7_SIGNATURE):
        is_32bit = is_32bit_architecture(hive, control_set)

    parser = ShimCacheParser(control_set, is_32bit)
    version = parser.detect_version(data)
    entries = parser.parse(data)
    logger.info(f"{version.value} shimcache loaded from {key_path}: {len(entries)} entries")

    return ShimCacheArtifact(
        entries=entries,
        last_update_ts=last_update_ts,
        version=version,
        control_set=control_set,
    )
