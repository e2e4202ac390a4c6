"""Safe tar extraction helpers.

Guards against common archive attacks:
- Tar Slip (``..`` path segments)
- Absolute member names
- Writes through already-extracted symlinks that lead out of the destination
- Symlink and hard-link targets outside the destination
- Oversized members (basic cap)

Extraction replays entries in stream order. Whatever already sits at a
member's path is removed first (a directory with everything beneath it).
A failure aborts the whole extraction; entries written so far stay on disk.
"""

from __future__ import annotations

import lzma
import os
import shutil
import stat
import tarfile
import time
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from distfiles.errors import CorruptArchive, MemberTooLarge, UnsafePath
from distfiles.logging import get_logger
from distfiles.security.filetype import sniff_format

MAX_MEMBER_BYTES = 512 * 1024 * 1024  # 512 MiB per member, buffered in memory

# Decoder failures surface as any of these; CRC and truncation errors from the
# gzip, bz2 and lzma readers included.
_DECODE_ERRORS = (tarfile.TarError, EOFError, OSError, lzma.LZMAError, zlib.error)

DRAIN_CHUNK = 1024 * 1024

logger = get_logger(__name__)


class EntryKind(str, Enum):
    DIRECTORY = "directory"
    REGULAR = "file"
    SYMLINK = "symlink"
    HARDLINK = "hardlink"


@dataclass(frozen=True)
class ArchiveEntry:
    kind: EntryKind
    name: str
    mode: int
    mtime: float
    linkname: str = ""
    size: int = 0

    @classmethod
    def from_member(cls, member: tarfile.TarInfo) -> ArchiveEntry | None:
        """Map a tar header to an entry; None for kinds we do not replay."""
        if member.isdir():
            kind = EntryKind.DIRECTORY
        elif member.isreg():
            kind = EntryKind.REGULAR
        elif member.issym():
            kind = EntryKind.SYMLINK
        elif member.islnk():
            kind = EntryKind.HARDLINK
        else:
            return None
        # Permission bits only: no setuid/setgid/sticky.
        mode = stat.S_IMODE(member.mode) & 0o777
        return cls(kind, member.name, mode, member.mtime, member.linkname, member.size)


def _is_within(base: Path, target: Path) -> bool:
    try:
        target.relative_to(base)
        return True
    except ValueError:
        return False


def _relative_name(name: str) -> PurePosixPath:
    rel = PurePosixPath(name)
    if rel.is_absolute() or ".." in rel.parts:
        raise UnsafePath(f"Unsafe member path: {name}")
    return rel


def _target_path(dest: Path, name: str) -> Path | None:
    """Return where *name* lands under *dest*, or None if it names *dest* itself."""
    rel = _relative_name(name)
    if not rel.parts:
        return None
    parent = (dest / rel).parent.resolve()
    if not _is_within(dest, parent):
        raise UnsafePath(f"Member escapes destination: {name}")
    return parent / rel.name


def _check_symlink(dest: Path, target: Path, entry: ArchiveEntry) -> None:
    resolved = (target.parent / entry.linkname).resolve()
    if not _is_within(dest, resolved):
        raise UnsafePath(f"Symlink escapes destination: {entry.name} -> {entry.linkname}")


def _hardlink_source(dest: Path, entry: ArchiveEntry) -> Path:
    # Hard-link targets are archive member names, i.e. relative to dest. The
    # final component is not resolved: a link to a symlink links the symlink.
    rel = _relative_name(entry.linkname)
    if not rel.parts:
        raise UnsafePath(f"Hard link to destination root: {entry.name}")
    parent = (dest / rel).parent.resolve()
    if not _is_within(dest, parent):
        raise UnsafePath(f"Hard link escapes destination: {entry.name} -> {entry.linkname}")
    return parent / rel.name


def clear_path(target: Path) -> None:
    """Remove whatever is at *target*: a directory recursively, anything else alone."""
    try:
        st = target.lstat()
    except FileNotFoundError:
        return
    if stat.S_ISDIR(st.st_mode):
        shutil.rmtree(target)
    else:
        target.unlink()


def _iter_members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    while True:
        try:
            member = tar.next()
        except _DECODE_ERRORS as exc:
            raise CorruptArchive(f"Cannot read archive header: {exc}") from exc
        if member is None:
            return
        yield member


def _read_member(tar: tarfile.TarFile, member: tarfile.TarInfo) -> bytes:
    try:
        fh = tar.extractfile(member)
        data = fh.read() if fh is not None else b""
    except _DECODE_ERRORS as exc:
        raise CorruptArchive(f"Cannot read member {member.name}: {exc}") from exc
    if len(data) != member.size:
        raise CorruptArchive(f"Truncated member {member.name}: {len(data)} of {member.size} bytes")
    return data


def _write_file(target: Path, data: bytes, entry: ArchiveEntry) -> None:
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, entry.mode)
    with os.fdopen(fd, "wb") as out:
        out.write(data)
    os.utime(target, (time.time(), entry.mtime))


def _drain(decompressed: BinaryIO) -> None:
    # tarfile stops at the end-of-archive blocks; the container trailer and
    # any truncation only show up once the decoder reaches its own end.
    try:
        while decompressed.read(DRAIN_CHUNK):
            pass
    except _DECODE_ERRORS as exc:
        raise CorruptArchive(f"Cannot read archive trailer: {exc}") from exc


def extract_archive(
    dest: Path, stream: BinaryIO, *, max_member_bytes: int = MAX_MEMBER_BYTES
) -> int:
    """Unpack the compressed tar in *stream* into *dest*.

    The container is detected from the stream's first bytes. Returns the
    number of entries materialized.

    Raises `UnknownFormat`, `UnsafePath`, `CorruptArchive` or
    `MemberTooLarge`; filesystem errors propagate unchanged.
    """
    dest.mkdir(parents=True, exist_ok=True)
    dest = dest.resolve()
    fmt = sniff_format(stream)

    # Directory mtimes are fixed once every child has been written.
    dir_times: list[tuple[Path, float]] = []
    count = 0
    with fmt.decompressor(stream) as decompressed:
        try:
            tar = tarfile.open(fileobj=decompressed, mode="r|")
        except _DECODE_ERRORS as exc:
            raise CorruptArchive(f"Cannot open {fmt.value} archive: {exc}") from exc

        with tar:
            for member in _iter_members(tar):
                entry = ArchiveEntry.from_member(member)
                if entry is None:
                    logger.debug("skipping unsupported member", extra={"member": member.name})
                    continue
                target = _target_path(dest, entry.name)
                if target is None:
                    continue
                if entry.kind is EntryKind.REGULAR and entry.size > max_member_bytes:
                    raise MemberTooLarge(f"Member too large: {entry.name} ({entry.size} bytes)")

                if entry.kind is EntryKind.SYMLINK:
                    _check_symlink(dest, target, entry)
                source = (
                    _hardlink_source(dest, entry) if entry.kind is EntryKind.HARDLINK else None
                )

                clear_path(target)
                target.parent.mkdir(parents=True, exist_ok=True)

                if entry.kind is EntryKind.DIRECTORY:
                    target.mkdir(mode=entry.mode)
                    dir_times.append((target, entry.mtime))
                elif entry.kind is EntryKind.REGULAR:
                    _write_file(target, _read_member(tar, member), entry)
                elif entry.kind is EntryKind.SYMLINK:
                    os.symlink(entry.linkname, target)
                else:
                    os.link(source, target, follow_symlinks=False)
                count += 1

        _drain(decompressed)

    now = time.time()
    for path, mtime in dir_times:
        try:
            st = path.lstat()
        except FileNotFoundError:
            # removed by a later entry
            continue
        if stat.S_ISDIR(st.st_mode):
            os.utime(path, (now, mtime), follow_symlinks=False)

    logger.info(
        "extracted archive",
        extra={"dest": str(dest), "format": fmt.value, "entries": count},
    )
    return count
