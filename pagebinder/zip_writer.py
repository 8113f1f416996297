"""
Store-only ZIP writer for EPUB containers.

Writes local file headers, the central directory and the end-of-central-directory
record by hand so the layout (entry order, no extra fields, no compression) is
exactly what EPUB readers expect.
"""

import logging
import struct
from dataclasses import dataclass

logger = logging.getLogger(__name__)

LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_HEADER_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIR_SIGNATURE = 0x06054B50

ZIP_VERSION = 20  # 2.0: plain stored entries and directories
METHOD_STORED = 0

ATTR_DIRECTORY = 0x10  # MS-DOS directory bit
ATTR_FILE = 0x20  # MS-DOS archive bit

MAX_UINT16 = 0xFFFF
MAX_UINT32 = 0xFFFFFFFF

# <IHHHHHIIIHH: signature, version, flags, method, time, date, crc, sizes, name len, extra len
_LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
# <IHHHHHHIIIHHHHHII: adds version made by, comment len, disk, attributes, offset
_CENTRAL_HEADER = struct.Struct("<IHHHHHHIIIHHHHHII")
_END_OF_CENTRAL_DIR = struct.Struct("<IHHHHIIH")


class ArchiveError(ValueError):
    """Raised when entries cannot be written as a valid store-only archive."""


def _make_crc32_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = (crc >> 1) ^ 0xEDB88320 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC32_TABLE = _make_crc32_table()


def crc32(data: bytes) -> int:
    """Compute the standard (reflected, 0xEDB88320) CRC-32 of data."""
    crc = 0xFFFFFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC32_TABLE[(crc ^ byte) & 0xFF]
    return crc ^ 0xFFFFFFFF


@dataclass(frozen=True)
class ArchiveEntry:
    """A named blob (or directory marker) destined for the archive.

    Attributes:
        path: Forward-slash separated path, without a trailing slash
        data: Uncompressed content (always empty for directories)
        is_directory: Whether this entry is a directory marker
    """

    path: str
    data: bytes = b""
    is_directory: bool = False

    @classmethod
    def file(cls, path: str, data: bytes | str) -> "ArchiveEntry":
        if isinstance(data, str):
            data = data.encode("utf-8")
        return cls(path=path.strip("/"), data=data)

    @classmethod
    def directory(cls, path: str) -> "ArchiveEntry":
        return cls(path=path.strip("/"), is_directory=True)

    @property
    def archive_name(self) -> str:
        """Name as stored in the archive (directories carry a trailing slash)."""
        return f"{self.path}/" if self.is_directory else self.path

    @property
    def checksum(self) -> int:
        return 0 if self.is_directory else crc32(self.data)


def with_directories(entries: list[ArchiveEntry]) -> list[ArchiveEntry]:
    """Add a directory entry for every directory prefix of every file path.

    Each missing directory is inserted right before the first entry that needs
    it, so the relative order of the given entries (and a leading ``mimetype``
    entry) is preserved. Explicit directory entries are never duplicated.

    Args:
        entries: Entries in the order they should be written

    Returns:
        New list including the directory entries
    """
    seen_dirs = {e.path for e in entries if e.is_directory}
    result: list[ArchiveEntry] = []

    for entry in entries:
        parts = entry.path.split("/")[:-1]
        for depth in range(1, len(parts) + 1):
            prefix = "/".join(parts[:depth])
            if prefix not in seen_dirs:
                seen_dirs.add(prefix)
                result.append(ArchiveEntry.directory(prefix))
        if entry.is_directory and any(r.is_directory and r.path == entry.path for r in result):
            continue
        result.append(entry)

    return result


def _validate(entries: list[ArchiveEntry]) -> None:
    if len(entries) > MAX_UINT16:
        raise ArchiveError(f"Too many entries for a non-ZIP64 archive: {len(entries)}")

    names: set[str] = set()
    for entry in entries:
        if not entry.path:
            raise ArchiveError("Archive entry path cannot be empty")
        if "\\" in entry.path or entry.path.startswith("/"):
            raise ArchiveError(f"Invalid archive path: {entry.path!r}")
        if entry.is_directory and entry.data:
            raise ArchiveError(f"Directory entry carries data: {entry.path!r}")
        if entry.archive_name in names:
            raise ArchiveError(f"Duplicate archive path: {entry.archive_name!r}")
        names.add(entry.archive_name)


def write_archive(entries: list[ArchiveEntry]) -> bytes:
    """Serialize entries into a store-only ZIP byte stream.

    Entries are written in the given order, so callers control what comes
    first (EPUB needs ``mimetype`` as the very first entry).

    Args:
        entries: Entries to write

    Returns:
        Complete archive bytes

    Raises:
        ArchiveError: If entries are invalid or the archive would need ZIP64
    """
    _validate(entries)

    chunks: list[bytes] = []
    central_records: list[bytes] = []
    offset = 0

    for entry in entries:
        name = entry.archive_name.encode("utf-8")
        size = len(entry.data)
        checksum = entry.checksum

        if size > MAX_UINT32 or offset > MAX_UINT32:
            raise ArchiveError(f"Entry {entry.path!r} exceeds 32-bit ZIP limits")

        local_header = _LOCAL_HEADER.pack(
            LOCAL_HEADER_SIGNATURE,
            ZIP_VERSION,
            0,  # flags
            METHOD_STORED,
            0,  # mod time
            0,  # mod date
            checksum,
            size,  # compressed
            size,  # uncompressed
            len(name),
            0,  # extra field length
        )
        chunks.extend((local_header, name, entry.data))

        central_records.append(_CENTRAL_HEADER.pack(
            CENTRAL_HEADER_SIGNATURE,
            ZIP_VERSION,  # made by
            ZIP_VERSION,  # needed to extract
            0,
            METHOD_STORED,
            0,
            0,
            checksum,
            size,
            size,
            len(name),
            0,  # extra field length
            0,  # comment length
            0,  # disk number start
            0,  # internal attributes
            ATTR_DIRECTORY if entry.is_directory else ATTR_FILE,
            offset,
        ) + name)

        offset += len(local_header) + len(name) + size

    central_dir_start = offset
    central_dir_size = sum(len(r) for r in central_records)
    if central_dir_start + central_dir_size > MAX_UINT32:
        raise ArchiveError("Archive exceeds 32-bit ZIP limits")

    end_record = _END_OF_CENTRAL_DIR.pack(
        END_OF_CENTRAL_DIR_SIGNATURE,
        0,  # this disk
        0,  # disk with central directory
        len(entries),
        len(entries),
        central_dir_size,
        central_dir_start,
        0,  # comment length
    )

    data = b"".join(chunks + central_records + [end_record])
    logger.debug(f"Wrote archive with {len(entries)} entries ({len(data)} bytes)")
    return data
