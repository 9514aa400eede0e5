"""
Read-only access to offline registry hives.

Wraps python-registry so the ShimCache and AmCache collectors only see
typed values, key timestamps and subkey iteration. Anything else that offers
``get_key(path)`` on the hive and ``get_value``/``last_written_time``/
``subkeys`` on its keys can be used in its place.
"""

import datetime
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Optional

from Registry import Registry, RegistryParse

from utils.error_handler import HiveLoadError, MissingFieldError, TypeMismatchError
from utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)


class ValueKind(Enum):
    """Typed content of a registry value."""
    BINARY = "binary"
    STRING = "string"
    U32 = "u32"
    U64 = "u64"
    I32 = "i32"
    I64 = "i64"
    NULL = "null"
    OTHER = "other"


# python-registry value type -> ValueKind
_VALUE_KINDS = {
    Registry.RegSZ: ValueKind.STRING,
    Registry.RegExpandSZ: ValueKind.STRING,
    Registry.RegBin: ValueKind.BINARY,
    Registry.RegDWord: ValueKind.U32,
    Registry.RegQWord: ValueKind.U64,
    Registry.RegNone: ValueKind.NULL,
}


@dataclass(frozen=True)
class HiveValue:
    """
    A registry value with its decoded content.

    Attributes:
        name: Value name
        kind: Typed content kind
        data: bytes for BINARY, str for STRING, int for the integer kinds
    """
    name: str
    kind: ValueKind
    data: Any


class HiveKey:
    """A registry key backed by python-registry."""

    def __init__(self, key: Registry.RegistryKey):
        self._key = key

    @property
    def name(self) -> str:
        return self._key.name()

    @property
    def path(self) -> str:
        return self._key.path()

    def get_value(self, name: str) -> Optional[HiveValue]:
        """
        Look up a value by name.

        Args:
            name: Value name

        Returns:
            HiveValue or None when the key has no such value
        """
        try:
            value = self._key.value(name)
        except Registry.RegistryValueNotFoundException:
            return None
        kind = _VALUE_KINDS.get(value.value_type(), ValueKind.OTHER)
        data = value.value() if kind is not ValueKind.NULL else None
        return HiveValue(name, kind, data)

    def last_written_time(self) -> datetime.datetime:
        """Key last-written time from the key's own metadata, in UTC."""
        return ensure_utc(self._key.timestamp())

    def subkeys(self) -> Iterator['HiveKey']:
        for subkey in self._key.subkeys():
            yield HiveKey(subkey)


class RegistryHive:
    """An offline registry hive file opened with python-registry."""

    def __init__(self, hive_path: str):
        """
        Open a hive file read-only.

        Args:
            hive_path: Path to the hive (SYSTEM, Amcache.hve, ...)

        Raises:
            HiveLoadError: If the file is missing or is not a regf hive
        """
        self.hive_path = hive_path
        if not os.path.isfile(hive_path):
            raise HiveLoadError("Registry hive not found", hive_path)
        try:
            self._registry = Registry.Registry(hive_path)
        except (OSError, RegistryParse.ParseException) as e:
            raise HiveLoadError("Could not load registry hive", hive_path, e)
        logger.debug(f"Loaded registry hive {hive_path}")

    def get_key(self, path: str) -> Optional[HiveKey]:
        """
        Resolve a key path relative to the hive root.

        Args:
            path: Backslash separated key path, e.g. ``Select``

        Returns:
            HiveKey or None when the path does not exist
        """
        try:
            return HiveKey(self._registry.open(path))
        except Registry.RegistryKeyNotFoundException:
            return None


def load_hive(hive_path: str) -> RegistryHive:
    """Open a registry hive file; see RegistryHive."""
    return RegistryHive(hive_path)


def require_key(hive, path: str):
    """Return the key at ``path`` or raise MissingFieldError."""
    key = hive.get_key(path)
    if key is None:
        raise MissingFieldError(path)
    return key


def require_value(key, key_path: str, name: str, *kinds: ValueKind) -> HiveValue:
    """
    Return a value that must exist and have one of the given kinds.

    Raises:
        MissingFieldError: If the value is absent
        TypeMismatchError: If the value has another kind
    """
    value = key.get_value(name)
    if value is None:
        raise MissingFieldError(key_path, name)
    if kinds and value.kind not in kinds:
        raise TypeMismatchError(
            key_path, name, "/".join(k.name for k in kinds), value.kind.name
        )
    return value


def control_set_name(control_set: int) -> str:
    """``1`` -> ``ControlSet001``"""
    return f"ControlSet{control_set:03d}"


def current_control_set(hive) -> int:
    """
    Find the active control set number of a SYSTEM hive.

    Args:
        hive: Hive exposing ``get_key``

    Returns:
        int: Value of ``Select\\Current``
    """
    key = require_key(hive, "Select")
    return require_value(key, "Select", "Current", ValueKind.U32).data


def is_32bit_architecture(hive, control_set: int) -> bool:
    """
    Check whether the SYSTEM hive belongs to a 32-bit (x86) installation.

    Args:
        hive: Hive exposing ``get_key``
        control_set: Active control set number

    Returns:
        bool: True when PROCESSOR_ARCHITECTURE is ``x86``
    """
    key_path = f"{control_set_name(control_set)}\\Control\\Session Manager\\Environment"
    key = require_key(hive, key_path)
    value = require_value(key, key_path, "PROCESSOR_ARCHITECTURE", ValueKind.STRING)
    return value.data == "x86"
