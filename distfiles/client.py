"""Upload client for a running distfiles server."""

from __future__ import annotations

from pathlib import Path

import httpx

from distfiles.signing.checks import digest_line


def upload_artifact(
    url: str,
    path: Path,
    *,
    token: str,
    project: str,
    version: str,
    release: bool = False,
    extract: bool = False,
    timeout: float = 300.0,
    client: httpx.Client | None = None,
) -> httpx.Response:
    """POST *path* with a freshly computed digest line.

    Raises `httpx.HTTPStatusError` when the server rejects the upload; the
    response body carries the server's failure tag.
    """
    path = Path(path)
    data = {
        "project": project,
        "version": version,
        "sha512": digest_line(path),
    }
    if release:
        data["release"] = "1"
    if extract:
        data["extract"] = "1"

    owns_client = client is None
    http = client or httpx.Client(timeout=timeout)
    try:
        with open(path, "rb") as fh:
            resp = http.post(
                url,
                data=data,
                files={"file": (path.name, fh, "application/octet-stream")},
                auth=(token, ""),
            )
        resp.raise_for_status()
        return resp
    finally:
        if owns_client:
            http.close()
