# Amcache parser: reads program and file inventory records out of Amcache.hve.
# - Windows 10+ layout: Root\InventoryApplication and Root\InventoryApplicationFile
# - Older layout: Root\Programs and Root\File\<volume>\<file>
# Every record keeps the last-written time of its registry key, which is the
# timestamp the timeline correlation relies on.

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from tqdm import tqdm

from collectors.hive_accessor import ValueKind, require_key
from utils.error_handler import InvalidTimestampError, MissingFieldError, TypeMismatchError
from utils.time_utils import filetime_to_datetime, parse_registry_date, unix_timestamp_to_datetime

logger = logging.getLogger(__name__)

INVENTORY_APPLICATION_PATH = "Root\\InventoryApplication"
INVENTORY_APPLICATION_FILE_PATH = "Root\\InventoryApplicationFile"
LEGACY_PROGRAMS_PATH = "Root\\Programs"
LEGACY_FILE_PATH = "Root\\File"

# FileId is the SHA-1 of the file with "0000" prepended
FILE_ID_RE = re.compile(r"0000([0-9a-fA-F]{40})")


@dataclass(frozen=True)
class AmcacheFileArtifact:
    """
    One InventoryApplicationFile (or legacy File) record.

    Attributes:
        program_id: Identifier of the owning program
        file_id: Raw FileId value
        path: Lower-cased long path of the file
        sha1: SHA-1 taken from file_id, when file_id has the expected shape
        link_date: PE link date
        key_last_modified_ts: Last-written time of the record's registry key
        file_last_modified_ts: File modification time (legacy layout only)
        key_name: Name of the record's registry key
    """
    program_id: Optional[str]
    file_id: Optional[str]
    path: str
    sha1: Optional[str]
    link_date: Optional[datetime]
    key_last_modified_ts: datetime
    file_last_modified_ts: Optional[datetime] = None
    key_name: str = ""


@dataclass(frozen=True)
class AmcacheProgramArtifact:
    """One InventoryApplication (or legacy Programs) record."""
    program_id: str
    program_name: str
    install_date: Optional[datetime]
    key_last_modified_ts: datetime
    version: Optional[str] = None
    root_directory_path: Optional[str] = None
    uninstall_string: Optional[str] = None
    uninstall_date: Optional[datetime] = None


@dataclass
class ProgramArtifact:
    """A program record grouped with the file records that reference it."""
    program_id: str
    program: Optional[AmcacheProgramArtifact] = None
    files: List[AmcacheFileArtifact] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        """True when files reference this program id but no program record exists."""
        return self.program is None


class AmcacheArtifact:
    """Decoded AmCache contents."""

    def __init__(self):
        self.programs: Dict[str, ProgramArtifact] = {}
        self.program_entries: List[AmcacheProgramArtifact] = []
        self._files: List[AmcacheFileArtifact] = []

    def add_program(self, program: AmcacheProgramArtifact):
        self.program_entries.append(program)
        grouping = self.programs.get(program.program_id)
        if grouping is None:
            self.programs[program.program_id] = ProgramArtifact(program.program_id, program)
        else:
            grouping.program = program

    def add_file(self, file_artifact: AmcacheFileArtifact):
        self._files.append(file_artifact)
        if file_artifact.program_id is None:
            return
        grouping = self.programs.get(file_artifact.program_id)
        if grouping is None:
            grouping = ProgramArtifact(file_artifact.program_id)
            self.programs[file_artifact.program_id] = grouping
        grouping.files.append(file_artifact)

    def iter_files(self) -> Iterator[AmcacheFileArtifact]:
        """All file records in decode order; every call starts a new pass."""
        yield from self._files

    @property
    def file_count(self) -> int:
        return len(self._files)

    def placeholder_programs(self) -> List[ProgramArtifact]:
        return [p for p in self.programs.values() if p.is_placeholder]


def sha1_from_file_id(file_id: Optional[str]) -> Optional[str]:
    """
    Extract the SHA-1 hash from a FileId value.

    Args:
        file_id: FileId string, e.g. "0000" followed by 40 hex digits

    Returns:
        The 40 hex digits, or None when the value has another shape
    """
    if file_id is None or len(file_id) != 44:
        return None
    match = FILE_ID_RE.fullmatch(file_id)
    return match.group(1) if match else None


def _string_value(key, key_path: str, name: str, required: bool = True) -> Optional[str]:
    value = key.get_value(name)
    if value is None:
        if required:
            raise MissingFieldError(key_path, name)
        return None
    if value.kind is not ValueKind.STRING:
        raise TypeMismatchError(key_path, name, ValueKind.STRING.name, value.kind.name)
    return value.data


def _unix_timestamp_value(key, key_path: str, name: str) -> Optional[datetime]:
    value = key.get_value(name)
    if value is None:
        return None
    if value.kind not in (ValueKind.U32, ValueKind.U64):
        raise TypeMismatchError(key_path, name, "U32/U64", value.kind.name)
    return unix_timestamp_to_datetime(value.data)


class AmcacheParser:
    """
    Parser for Amcache.hve program and file inventory.

    Missing or wrongly typed required values abort the whole parse: a
    partial inventory would silently skew the timeline correlation.
    """

    def __init__(self, hive, show_progress: bool = False):
        """
        Args:
            hive: Hive exposing ``get_key`` (see collectors.hive_accessor)
            show_progress: Show tqdm progress bars while walking subkeys
        """
        self.hive = hive
        self.show_progress = show_progress

    def _subkeys(self, key, desc: str):
        return tqdm(key.subkeys(), desc=f"[Amcache] {desc}", unit="key",
                    disable=not self.show_progress)

    def parse(self) -> AmcacheArtifact:
        """
        Parse the hive, choosing the layout by the presence of
        ``Root\\InventoryApplicationFile``.

        Returns:
            AmcacheArtifact
        """
        artifact = AmcacheArtifact()
        if self.hive.get_key(INVENTORY_APPLICATION_FILE_PATH) is not None:
            self.parse_inventory_applications(artifact)
            self.parse_inventory_application_files(artifact)
        else:
            logger.info("InventoryApplicationFile not found, parsing legacy Amcache layout")
            self.parse_legacy_programs(artifact)
            self.parse_legacy_files(artifact)

        placeholders = len(artifact.placeholder_programs())
        if placeholders:
            logger.debug(f"{placeholders} program ids referenced by files have no program record")
        logger.info(
            f"Amcache parsed: {len(artifact.program_entries)} programs, {artifact.file_count} files"
        )
        return artifact

    def parse_inventory_applications(self, artifact: AmcacheArtifact):
        root = require_key(self.hive, INVENTORY_APPLICATION_PATH)
        for key in self._subkeys(root, "InventoryApplication"):
            key_path = f"{INVENTORY_APPLICATION_PATH}\\{key.name}"
            install_date_str = _string_value(key, key_path, "InstallDate", required=False)
            install_date = parse_registry_date(install_date_str) if install_date_str else None

            artifact.add_program(AmcacheProgramArtifact(
                program_id=key.name,
                program_name=_string_value(key, key_path, "Name"),
                install_date=install_date,
                key_last_modified_ts=key.last_written_time(),
                version=_string_value(key, key_path, "Version", required=False),
                root_directory_path=_string_value(key, key_path, "RootDirPath", required=False),
                uninstall_string=_string_value(key, key_path, "UninstallString", required=False),
            ))

    def parse_inventory_application_files(self, artifact: AmcacheArtifact):
        root = require_key(self.hive, INVENTORY_APPLICATION_FILE_PATH)
        for key in self._subkeys(root, "InventoryApplicationFile"):
            key_path = f"{INVENTORY_APPLICATION_FILE_PATH}\\{key.name}"
            program_id = _string_value(key, key_path, "ProgramId")
            file_id = _string_value(key, key_path, "FileId")
            path = _string_value(key, key_path, "LowerCaseLongPath")

            link_date = None
            link_date_str = _string_value(key, key_path, "LinkDate", required=False)
            if link_date_str:
                # Link dates are sometimes garbage; treat those as absent
                try:
                    link_date = parse_registry_date(link_date_str)
                except InvalidTimestampError as e:
                    logger.debug(f"Ignoring LinkDate of {key_path}: {e}")

            artifact.add_file(AmcacheFileArtifact(
                program_id=program_id,
                file_id=file_id,
                path=path,
                sha1=sha1_from_file_id(file_id),
                link_date=link_date,
                key_last_modified_ts=key.last_written_time(),
                key_name=key.name,
            ))

    def parse_legacy_programs(self, artifact: AmcacheArtifact):
        root = require_key(self.hive, LEGACY_PROGRAMS_PATH)
        for key in self._subkeys(root, "Programs"):
            key_path = f"{LEGACY_PROGRAMS_PATH}\\{key.name}"
            artifact.add_program(AmcacheProgramArtifact(
                program_id=key.name,
                program_name=_string_value(key, key_path, "0"),
                install_date=_unix_timestamp_value(key, key_path, "a"),
                key_last_modified_ts=key.last_written_time(),
                version=_string_value(key, key_path, "1", required=False),
                uninstall_date=_unix_timestamp_value(key, key_path, "b"),
            ))

    def parse_legacy_files(self, artifact: AmcacheArtifact):
        root = require_key(self.hive, LEGACY_FILE_PATH)
        for volume_key in self._subkeys(root, "File"):
            volume_path = f"{LEGACY_FILE_PATH}\\{volume_key.name}"
            for key in volume_key.subkeys():
                key_path = f"{volume_path}\\{key.name}"
                file_id = _string_value(key, key_path, "101", required=False)

                file_last_modified_ts = None
                modified = key.get_value("17")
                if modified is not None and modified.kind is ValueKind.U64:
                    file_last_modified_ts = filetime_to_datetime(modified.data)

                artifact.add_file(AmcacheFileArtifact(
                    program_id=_string_value(key, key_path, "100", required=False),
                    file_id=file_id,
                    path=_string_value(key, key_path, "15"),
                    sha1=sha1_from_file_id(file_id),
                    link_date=_unix_timestamp_value(key, key_path, "f"),
                    key_last_modified_ts=key.last_written_time(),
                    file_last_modified_ts=file_last_modified_ts,
                    key_name=key.name,
                ))


def decode_amcache(hive, show_progress: bool = False) -> AmcacheArtifact:
    """Parse an Amcache hive; see AmcacheParser."""
    return AmcacheParser(hive, show_progress).parse()
