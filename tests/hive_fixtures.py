"""
Shared helpers for the test suite: in-memory registry keys and ShimCache
blob builders.
"""

import struct
from datetime import datetime, timezone

from collectors.hive_accessor import HiveValue, ValueKind

UTC = timezone.utc
DEFAULT_KEY_TIME = datetime(2021, 6, 1, 12, 0, 0, tzinfo=UTC)

WINDOWS_7_SIGNATURE = 0xBADC0FEE
WINDOWS_7_HEADER_SIZE = 128
WINDOWS_7_X64_RECORD = struct.Struct('<HH4xQQIIQQ')
WINDOWS_7_X86_RECORD = struct.Struct('<HHIQIIII')
WINDOWS_10_HEADER_SIZE = 0x34


def string_value(name, data):
    return HiveValue(name, ValueKind.STRING, data)


def binary_value(name, data):
    return HiveValue(name, ValueKind.BINARY, data)


def u32_value(name, data):
    return HiveValue(name, ValueKind.U32, data)


def u64_value(name, data):
    return HiveValue(name, ValueKind.U64, data)


class FakeKey:
    """In-memory stand-in for collectors.hive_accessor.HiveKey."""

    def __init__(self, name, values=None, subkeys=None, timestamp=DEFAULT_KEY_TIME):
        self.name = name
        self.path = name
        self._values = {v.name: v for v in (values or [])}
        self._subkeys = list(subkeys or [])
        self._timestamp = timestamp

    def get_value(self, name):
        return self._values.get(name)

    def last_written_time(self):
        return self._timestamp

    def subkeys(self):
        for subkey in self._subkeys:
            yield subkey


class FakeHive:
    """In-memory stand-in for collectors.hive_accessor.RegistryHive."""

    def __init__(self, keys=None):
        self._keys = dict(keys or {})

    def add_key(self, path, key):
        self._keys[path] = key
        return key

    def get_key(self, path):
        return self._keys.get(path)


def make_system_hive(blob, control_set=1, last_update=DEFAULT_KEY_TIME, architecture="AMD64"):
    """A SYSTEM hive holding ``blob`` as the AppCompatCache value of the current control set."""
    control_set_path = f"ControlSet{control_set:03d}"
    hive = FakeHive()
    hive.add_key("Select", FakeKey("Select", [u32_value("Current", control_set)]))
    hive.add_key(
        f"{control_set_path}\\Control\\Session Manager\\AppCompatCache",
        FakeKey("AppCompatCache", [binary_value("AppCompatCache", blob)], timestamp=last_update),
    )
    hive.add_key(
        f"{control_set_path}\\Control\\Session Manager\\Environment",
        FakeKey("Environment", [string_value("PROCESSOR_ARCHITECTURE", architecture)]),
    )
    return hive


def windows_10_record(path, filetime, payload=b""):
    """Encode one Windows 10 cache record."""
    path_bytes = path.encode('utf-16-le')
    body = (
        struct.pack('<H', len(path_bytes)) + path_bytes
        + struct.pack('<Q', filetime)
        + struct.pack('<I', len(payload)) + payload
    )
    return b"10ts" + b"\x00" * 4 + struct.pack('<I', len(body)) + body


def build_windows_10_blob(records, header_size=WINDOWS_10_HEADER_SIZE, trailer=b""):
    """
    Build a Windows 10 AppCompatCache value.

    Args:
        records: Iterable of (path, filetime, payload) tuples
        header_size: Offset of the first record, stored in the first 4 bytes
        trailer: Bytes appended after the last record
    """
    header = struct.pack('<I', header_size).ljust(header_size, b"\x00")
    return header + b"".join(windows_10_record(*record) for record in records) + trailer


def build_windows_7_blob(records, entry_count=None, is_32bit=False):
    """
    Build a Windows 7 AppCompatCache value.

    Records are laid out after the header, followed by the path and payload
    areas they point into.

    Args:
        records: Iterable of (path, filetime, insert_flags, payload) tuples
        entry_count: Count written to the header, defaults to len(records)
        is_32bit: Use the x86 record layout
    """
    records = list(records)
    if entry_count is None:
        entry_count = len(records)
    record_struct = WINDOWS_7_X86_RECORD if is_32bit else WINDOWS_7_X64_RECORD

    header = struct.pack('<II', WINDOWS_7_SIGNATURE, entry_count).ljust(WINDOWS_7_HEADER_SIZE, b"\x00")
    data_area = b""
    data_start = WINDOWS_7_HEADER_SIZE + record_struct.size * len(records)
    packed_records = b""
    for path, filetime, insert_flags, payload in records:
        path_bytes = path.encode('utf-16-le')
        path_offset = data_start + len(data_area)
        data_area += path_bytes
        payload_offset = data_start + len(data_area)
        data_area += payload
        packed_records += record_struct.pack(
            len(path_bytes), len(path_bytes) + 2, path_offset, filetime,
            insert_flags, 0, len(payload), payload_offset,
        )
    return header + packed_records + data_area
