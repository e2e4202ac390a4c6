"""Upload orchestration: authenticate → parse form → verify → persist → repoint → extract.

Every step either passes or raises an `UploadFailure` carrying the tag the
client sees. Nothing is rolled back: a failure after persisting leaves the
files written so far in place.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Any, BinaryIO, Protocol

from distfiles.config import Settings
from distfiles.errors import (
    AuthenticationFailure,
    ContentValidationFailure,
    DigestMismatch,
    ExtractionError,
    ExtractionFailure,
    FormValidationFailure,
    MalformedDigestLine,
    StorageFailure,
)
from distfiles.logging import get_logger
from distfiles.security.archive import extract_archive
from distfiles.signing.checks import parse_digest_line, verify_sha512
from distfiles.store.artifacts import ArtifactStore
from distfiles.types import ArtifactLocation, DigestLine

TRUTHY = frozenset({"1", "true"})
MIN_FILENAME_LENGTH = 4
_PATH_CHARS = ("/", "\\", "\x00")

logger = get_logger(__name__)


class FormData(Protocol):
    """Multi-valued form mapping (Starlette's `FormData` fits)."""

    def getlist(self, key: str) -> list[Any]: ...


@dataclass
class UploadRequest:
    project: str
    version: str
    digest: DigestLine
    content: BinaryIO
    release: bool = False
    extract: bool = False

    @property
    def version_tag(self) -> str:
        return f"{self.project}-{self.version}"

    @property
    def filename(self) -> str:
        return self.digest.filename


@dataclass
class UploadResult:
    location: ArtifactLocation
    released: bool
    extracted: int | None = None


def _single(form: FormData, name: str) -> str:
    values = form.getlist(name)
    if len(values) != 1 or not isinstance(values[0], str):
        raise FormValidationFailure("BADFORM", f"field {name!r} must be given exactly once")
    return values[0]


def _flag(form: FormData, name: str) -> bool:
    values = form.getlist(name)
    return len(values) == 1 and values[0] in TRUTHY


def _check_segment(value: str, tag: str) -> None:
    # project and version become directory names
    if value in {"", ".", ".."} or any(c in value for c in _PATH_CHARS):
        raise FormValidationFailure(tag, f"not a usable path segment: {value!r}")


class UploadPipeline:
    def __init__(self, settings: Settings, store: ArtifactStore | None = None) -> None:
        self.settings = settings
        self.store = store or ArtifactStore(settings.storage_dir)

    # --- 1. Authenticate --------------------------------------------------

    def authenticate(self, username: str | None) -> None:
        """Compare the Basic-auth username against the configured token."""
        if username is None:
            raise AuthenticationFailure("NOAUTH")
        token = self.settings.auth_token.encode("utf-8")
        if not hmac.compare_digest(username.encode("utf-8"), token):
            raise AuthenticationFailure("BADAUTH")

    # --- 2/3. Parse form and validate naming --------------------------------

    def parse_form(self, form: FormData) -> UploadRequest:
        project = _single(form, "project")
        version = _single(form, "version")
        line = _single(form, "sha512")
        _check_segment(project, "BADFORM_PROJECT")
        _check_segment(version, "BADFORM_VERSION")

        try:
            digest = parse_digest_line(line)
        except MalformedDigestLine as exc:
            raise FormValidationFailure("BADFORM_SHA512", str(exc)) from exc
        if len(digest.filename) < MIN_FILENAME_LENGTH:
            raise FormValidationFailure("BADFORM_FILENAME_LENGTH", digest.filename)
        if any(c in digest.filename for c in _PATH_CHARS):
            raise FormValidationFailure("BADFORM_FILENAME_SLASH", digest.filename)

        files = form.getlist("file")
        if not files:
            raise FormValidationFailure("BADFORM_NOFILE", "no file part")
        upload = files[0]
        if len(files) != 1 or getattr(upload, "file", None) is None:
            raise FormValidationFailure("BADFORM_FILE", "field 'file' must be a single file part")
        if upload.filename != digest.filename:
            raise FormValidationFailure(
                "BADFORM_SHA512_FILENAME",
                f"uploaded {upload.filename!r}, digest line names {digest.filename!r}",
            )

        return UploadRequest(
            project=project,
            version=version,
            digest=digest,
            content=upload.file,
            release=_flag(form, "release"),
            extract=_flag(form, "extract"),
        )

    # --- 4..7. Verify, persist, repoint, extract ---------------------------

    def verify(self, request: UploadRequest) -> None:
        try:
            request.content.seek(0)
            verify_sha512(request.content, request.digest.hexdigest)
        except DigestMismatch as exc:
            raise ContentValidationFailure("BADFORM_SHA512_HASH", str(exc)) from exc
        except OSError as exc:
            raise StorageFailure("SHA512_SUM", str(exc)) from exc

    def process(self, request: UploadRequest) -> UploadResult:
        """Run steps 4-7 for an authenticated, parsed request.

        Blocking; the HTTP layer calls it from a worker thread.
        """
        self.verify(request)

        location = self.store.locate(request.project, request.version_tag, request.filename)
        result = UploadResult(location=location, released=request.release)
        with self.store.lock(request.project):
            self.store.persist(location, request.content, request.digest.raw)
            self.store.repoint(location, as_release=request.release)
            if request.extract:
                result.extracted = self._extract(request, location)

        logger.info(
            "upload complete",
            extra={
                "project": request.project,
                "version_tag": request.version_tag,
                "artifact": request.filename,
                "release": request.release,
                "extracted": result.extracted,
            },
        )
        return result

    def _extract(self, request: UploadRequest, location: ArtifactLocation) -> int:
        try:
            request.content.seek(0)
            return extract_archive(location.directory, request.content)
        except (ExtractionError, OSError) as exc:
            raise ExtractionFailure("EXTRACT", f"{type(exc).__name__}: {exc}") from exc
