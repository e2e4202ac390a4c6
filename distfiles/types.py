"""Shared Pydantic models."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict

SIDECAR_SUFFIX = ".sha512"
LATEST = "LATEST"
LATEST_RELEASE = "LATEST_RELEASE"


class DigestLine(BaseModel):
    """One `sha512sum`-style line: ``<hex> <mode><filename>``."""

    model_config = ConfigDict(frozen=True)

    hexdigest: str
    mode: Literal[" ", "*"]
    filename: str
    raw: str

    @property
    def binary(self) -> bool:
        return self.mode == "*"


class ArtifactLocation(BaseModel):
    """Where one uploaded file lives.

    Layout::

        <storage>/<project>/<project>-<version>/<filename>
        <storage>/<project>/<project>-<version>/<filename>.sha512
        <storage>/<project>/LATEST -> <project>-<version>
    """

    model_config = ConfigDict(frozen=True)

    project_dir: Path
    version_tag: str
    directory: Path
    artifact: Path
    sidecar: Path

    @classmethod
    def build(
        cls, storage_dir: Path, project: str, version_tag: str, filename: str
    ) -> ArtifactLocation:
        project_dir = Path(storage_dir) / project
        directory = project_dir / version_tag
        return cls(
            project_dir=project_dir,
            version_tag=version_tag,
            directory=directory,
            artifact=directory / filename,
            sidecar=directory / f"{filename}{SIDECAR_SUFFIX}",
        )

    @property
    def latest(self) -> Path:
        return self.project_dir / LATEST

    @property
    def latest_release(self) -> Path:
        return self.project_dir / LATEST_RELEASE
