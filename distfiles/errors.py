"""Exception hierarchy.

Component errors (archive, digest, config) describe what went wrong.
Upload failures add the stable tag and HTTP status reported to clients.
"""

from __future__ import annotations


class DistfilesError(Exception):
    """Base exception for all distfiles errors."""


class ConfigError(DistfilesError):
    """Settings are present but unusable (e.g. storage dir is a file)."""


# --- Archive extraction ------------------------------------------------------


class ExtractionError(DistfilesError):
    """Base for everything the extraction engine raises on its own."""


class UnknownFormat(ExtractionError):
    """Stream does not start with a recognized compression magic."""


class UnsafePath(ExtractionError):
    """A member name or link target escapes the destination directory."""


class CorruptArchive(ExtractionError):
    """The compressed or tar layer could not be decoded."""


class MemberTooLarge(ExtractionError):
    """A regular-file member exceeds the per-member size cap."""


# --- Integrity ---------------------------------------------------------------


class MalformedDigestLine(DistfilesError, ValueError):
    """Digest line does not match `<128 hex> <' ' or '*'><filename>`."""


class DigestMismatch(DistfilesError, ValueError):
    """Content hash differs from the declared digest."""

    def __init__(self, got: str, expected: str) -> None:
        super().__init__(f"SHA-512 mismatch: got {got}, expected {expected}")
        self.got = got
        self.expected = expected


# --- Upload pipeline ---------------------------------------------------------


class UploadFailure(DistfilesError):
    """A pipeline step terminated the upload.

    ``tag`` is the short, stable string sent back to the client; ``status``
    is the HTTP status code it maps to.
    """

    status: int = 500

    def __init__(self, tag: str, detail: str | None = None) -> None:
        super().__init__(detail or tag)
        self.tag = tag
        self.detail = detail


class AuthenticationFailure(UploadFailure):
    status = 401


class FormValidationFailure(UploadFailure):
    status = 400


class ContentValidationFailure(UploadFailure):
    status = 400


class StorageFailure(UploadFailure):
    status = 500


class ExtractionFailure(UploadFailure):
    status = 500
