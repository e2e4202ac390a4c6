"""Integrity helpers: SHA-512 digest lines, compute & verify.

Digest lines use the `sha512sum` format, ``<128 hex> <' ' or '*'><filename>``,
and are stored verbatim next to each artifact.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from pathlib import Path
from typing import BinaryIO

from distfiles.errors import DigestMismatch, MalformedDigestLine
from distfiles.types import DigestLine

CHUNK_SIZE = 1024 * 1024

_DIGEST_LINE = re.compile(r"([0-9a-f]{128}) (\*| )(.+)")


def parse_digest_line(line: str) -> DigestLine:
    """Split *line* into digest, mode and filename.

    Raises `MalformedDigestLine` unless the whole line matches the grammar
    (trailing newlines included).
    """
    m = _DIGEST_LINE.fullmatch(line)
    if m is None:
        raise MalformedDigestLine(f"Malformed SHA-512 line: {line[:160]!r}")
    return DigestLine(hexdigest=m.group(1), mode=m.group(2), filename=m.group(3), raw=line)


def sha512_stream(stream: BinaryIO) -> str:
    """Return the hex SHA-512 of *stream* from its current position to EOF."""
    h = hashlib.sha512()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        h.update(chunk)
    return h.hexdigest()


def sha512(path: Path) -> str:
    """Return the hex SHA-512 of *path*."""
    with open(path, "rb") as f:
        return sha512_stream(f)


def digest_line(path: Path, filename: str | None = None) -> str:
    """Binary-mode digest line for *path*, as `sha512sum -b` prints it."""
    return f"{sha512(path)} *{filename or Path(path).name}"


def matches_sha512(stream: BinaryIO, expected: str) -> bool:
    got = bytes.fromhex(sha512_stream(stream))
    return hmac.compare_digest(got, bytes.fromhex(expected))


def verify_sha512(stream: BinaryIO, expected: str) -> None:
    """Raise `DigestMismatch` if *stream*'s SHA-512 does not match *expected*."""
    got = sha512_stream(stream)
    if not hmac.compare_digest(bytes.fromhex(got), bytes.fromhex(expected)):
        raise DigestMismatch(got, expected)
