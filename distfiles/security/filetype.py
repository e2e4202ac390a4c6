"""Compression container sniffing by magic bytes."""

from __future__ import annotations

import bz2
import gzip
import lzma
from enum import Enum
from typing import BinaryIO

from distfiles.errors import UnknownFormat


class ArchiveFormat(str, Enum):
    GZIP = "gz"
    BZIP2 = "bz2"
    XZ = "xz"

    def decompressor(self, stream: BinaryIO) -> BinaryIO:
        """Wrap *stream* in a reader that checks the container's trailer.

        Closing the reader leaves *stream* open.
        """
        if self is ArchiveFormat.GZIP:
            return gzip.GzipFile(fileobj=stream, mode="rb")
        if self is ArchiveFormat.BZIP2:
            return bz2.BZ2File(stream, mode="rb")
        return lzma.LZMAFile(stream, mode="rb")


# Checked in order, first match wins. The LZMA-alone header decodes through
# the same xz reader.
_MAGIC_NUMBERS: tuple[tuple[bytes, ArchiveFormat], ...] = (
    (b"\x1f\x8b\x08", ArchiveFormat.GZIP),
    (b"BZh", ArchiveFormat.BZIP2),
    (b"\x5d\x00\x00\x80", ArchiveFormat.XZ),
    (b"\xfd7zXZ", ArchiveFormat.XZ),
)

SNIFF_BYTES = 6


def sniff_format(stream: BinaryIO) -> ArchiveFormat:
    """Classify *stream* by its first bytes and rewind it to where it was.

    Raises `UnknownFormat` if no known magic matches.
    """
    start = stream.tell()
    head = stream.read(SNIFF_BYTES)
    stream.seek(start)
    for magic, fmt in _MAGIC_NUMBERS:
        if head.startswith(magic):
            return fmt
    raise UnknownFormat(f"unknown compression format (magic {head[:SNIFF_BYTES].hex() or 'empty'})")
