"""Shared fixtures: settings on a temp storage root and in-memory tarball builders."""

from __future__ import annotations

import hashlib
import io
import tarfile
from pathlib import Path

import pytest

from distfiles.config import Settings, load_settings

TOKEN = "s3cret-token"
MTIME = 1_600_000_000


def member(
    name: str,
    data: bytes | None = None,
    *,
    kind: bytes = tarfile.REGTYPE,
    linkname: str = "",
    mode: int = 0o644,
    mtime: int = MTIME,
) -> tuple[tarfile.TarInfo, bytes | None]:
    info = tarfile.TarInfo(name)
    info.type = kind
    info.linkname = linkname
    info.mode = mode
    info.mtime = mtime
    return info, data


def make_tar(members: list[tuple[tarfile.TarInfo, bytes | None]], compression: str = "gz") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=f"w:{compression}") as tar:
        for info, data in members:
            if data is None:
                tar.addfile(info)
            else:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def digest_line_for(data: bytes, filename: str, mode: str = "*") -> str:
    return f"{hashlib.sha512(data).hexdigest()} {mode}{filename}"


@pytest.fixture
def storage(tmp_path: Path) -> Path:
    return tmp_path / "storage"


@pytest.fixture
def settings(storage: Path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return load_settings(_env_file=None, auth_token=TOKEN, storage_dir=storage)
