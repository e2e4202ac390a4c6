"""Artifact store: project/version directory tree plus LATEST pointers.

Layout: {storage}/{project}/{project}-{version}/{filename} (+ ``.sha512`` sidecar).
``LATEST`` and ``LATEST_RELEASE`` are relative symlinks to a version directory,
swapped in with a rename so readers never see a missing pointer.
Nothing here is ever deleted by the store itself.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import stat
import threading
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from distfiles.errors import StorageFailure
from distfiles.logging import get_logger
from distfiles.security.archive import clear_path
from distfiles.types import ArtifactLocation

COPY_CHUNK = 1024 * 1024

logger = get_logger(__name__)


@contextlib.contextmanager
def _step(tag: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise StorageFailure(tag, str(exc)) from exc


def _clear_non_file(path: Path) -> None:
    try:
        st = path.lstat()
    except FileNotFoundError:
        return
    if not stat.S_ISREG(st.st_mode):
        clear_path(path)


class ArtifactStore:
    """Writes artifacts under *storage_dir* and maintains the pointer links.

    Callers mutating one project hold `lock(project)` around
    persist/repoint/extract; different projects proceed in parallel.
    """

    def __init__(self, storage_dir: Path) -> None:
        self._root = Path(storage_dir)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def locate(self, project: str, version_tag: str, filename: str) -> ArtifactLocation:
        return ArtifactLocation.build(self._root, project, version_tag, filename)

    @contextlib.contextmanager
    def lock(self, project: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(project, threading.Lock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------

    def persist(self, location: ArtifactLocation, content: BinaryIO, digest_line: str) -> None:
        """Write the sidecar verbatim, then copy *content* from its start.

        Raises `StorageFailure` tagged with the step that failed.
        """
        with _step("DIRECTORY_CREATE"):
            location.directory.mkdir(parents=True, exist_ok=True)

        with _step("SHA512_FILE"):
            _clear_non_file(location.sidecar)
            location.sidecar.write_bytes(digest_line.encode("utf-8"))

        with _step("SEEK"):
            content.seek(0)

        with _step("FILE_CREATE"):
            _clear_non_file(location.artifact)
            out = open(location.artifact, "wb")

        with _step("FILE_COPY"):
            try:
                shutil.copyfileobj(content, out, COPY_CHUNK)
            except BaseException:
                out.close()
                raise

        with _step("FILE_CLOSE"):
            out.close()

        logger.info(
            "stored artifact",
            extra={"artifact": str(location.artifact), "version_tag": location.version_tag},
        )

    # ------------------------------------------------------------------
    # Pointers
    # ------------------------------------------------------------------

    def repoint(self, location: ArtifactLocation, *, as_release: bool = False) -> None:
        """Point LATEST (and LATEST_RELEASE when *as_release*) at the version dir."""
        self._swap_link(location.latest, location.version_tag, "LATEST")
        if as_release:
            self._swap_link(location.latest_release, location.version_tag, "LATEST_RELEASE")

    @staticmethod
    def _swap_link(link: Path, version_tag: str, tag: str) -> None:
        tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex}")
        try:
            os.symlink(version_tag, tmp)
            os.replace(tmp, link)
        except OSError as exc:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            raise StorageFailure(tag, str(exc)) from exc
        logger.info("repointed link", extra={"link": str(link), "target": version_tag})

    def resolve_pointer(self, project: str, name: str = "LATEST") -> str | None:
        """Return the version tag a pointer link names, or None if absent."""
        link = self._root / project / name
        if not link.is_symlink():
            return None
        return os.readlink(link)
