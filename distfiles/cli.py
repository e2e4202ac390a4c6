"""distfiles CLI: serve the upload endpoint and work with artifacts locally.

Commands:
- serve    run the HTTP server (settings from DISTFILES_* env vars)
- digest   print a sha512sum-compatible line for a file
- verify   check a file against its .sha512 sidecar (or a given line)
- extract  unpack a .tar.{gz,bz2,xz} with the same engine the server uses
- upload   push a file to a running server
- latest   show where LATEST / LATEST_RELEASE point for a project
"""

from __future__ import annotations

from pathlib import Path

import httpx
import typer
from pydantic import ValidationError
from rich import print as rprint
from rich.console import Console

from distfiles.client import upload_artifact
from distfiles.config import Settings, load_settings
from distfiles.errors import ConfigError, DigestMismatch, ExtractionError, MalformedDigestLine
from distfiles.logging import configure_logging
from distfiles.security.archive import extract_archive
from distfiles.signing.checks import digest_line, parse_digest_line, verify_sha512
from distfiles.store.artifacts import ArtifactStore
from distfiles.types import LATEST, LATEST_RELEASE, SIDECAR_SUFFIX

app = typer.Typer(add_completion=False, help="Upload, verify and unpack release artifacts")
err_console = Console(stderr=True)


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[red]error:[/red] {message}")
    return typer.Exit(code=1)


def _settings(**overrides) -> Settings:
    overrides = {k: v for k, v in overrides.items() if v is not None}
    try:
        settings = load_settings(**overrides)
    except (ValidationError, ConfigError) as exc:
        err_console.print("usage: distfiles serve  (configure via DISTFILES_* environment)")
        raise _fail(str(exc)) from exc
    return settings


@app.command()
def serve(
    listen: str | None = typer.Option(None, "--listen", help="Override DISTFILES_LISTEN_ADDR"),
    storage: str | None = typer.Option(None, "--storage", help="Override DISTFILES_STORAGE_DIR"),
) -> None:
    import uvicorn

    from distfiles.server import create_app

    settings = _settings(listen_addr=listen, storage_dir=storage)
    configure_logging(settings.log_level)
    err_console.print(f" * Listening on {settings.listen_addr}")
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )


@app.command()
def digest(path: Path = typer.Argument(..., exists=True, dir_okay=False)) -> None:
    print(digest_line(path))


@app.command()
def verify(
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    line: str | None = typer.Option(None, "--line", help="Digest line (default: <file>.sha512)"),
) -> None:
    if line is None:
        sidecar = path.with_name(path.name + SIDECAR_SUFFIX)
        if not sidecar.exists():
            raise _fail(f"Missing digest file: {sidecar}")
        line = sidecar.read_text(encoding="utf-8").rstrip("\n")
    try:
        parsed = parse_digest_line(line)
        with open(path, "rb") as fh:
            verify_sha512(fh, parsed.hexdigest)
    except (MalformedDigestLine, DigestMismatch) as exc:
        raise _fail(str(exc)) from exc
    if parsed.filename != path.name:
        rprint(f"[yellow]note:[/yellow] digest line names {parsed.filename!r}")
    rprint("[green]SHA-512 verified.[/green]")


@app.command()
def extract(
    archive: Path = typer.Argument(..., exists=True, dir_okay=False),
    dest: Path = typer.Argument(..., help="Destination directory (created if missing)"),
) -> None:
    try:
        with open(archive, "rb") as fh:
            count = extract_archive(dest, fh)
    except ExtractionError as exc:
        raise _fail(f"{type(exc).__name__}: {exc}") from exc
    rprint(f"[green]Extracted[/green] {count} entries into {dest}")


@app.command()
def upload(
    url: str = typer.Argument(..., help="Server URL, e.g. https://distfiles.example.org/"),
    path: Path = typer.Argument(..., exists=True, dir_okay=False),
    project: str = typer.Option(..., "--project", "-p"),
    version: str = typer.Option(..., "--version", "-v"),
    token: str = typer.Option(..., "--token", envvar="DISTFILES_AUTH_TOKEN"),
    release: bool = typer.Option(False, "--release", help="Also move LATEST_RELEASE"),
    extract_: bool = typer.Option(False, "--extract", help="Unpack the archive server-side"),
    timeout: float = typer.Option(300.0, "--timeout"),
) -> None:
    try:
        upload_artifact(
            url,
            path,
            token=token,
            project=project,
            version=version,
            release=release,
            extract=extract_,
            timeout=timeout,
        )
    except httpx.HTTPStatusError as exc:
        raise _fail(f"{exc.response.status_code} {exc.response.text.strip()}") from exc
    except httpx.HTTPError as exc:
        raise _fail(str(exc)) from exc
    rprint(f"[green]Uploaded:[/green] {project}-{version}/{path.name}")


@app.command()
def latest(
    project: str = typer.Argument(...),
    storage: Path = typer.Option(Path("data"), "--storage", envvar="DISTFILES_STORAGE_DIR"),
    release: bool = typer.Option(False, "--release", help="Show LATEST_RELEASE instead"),
) -> None:
    name = LATEST_RELEASE if release else LATEST
    target = ArtifactStore(storage).resolve_pointer(project, name)
    if target is None:
        raise _fail(f"{project}/{name} is not set")
    print(target)


if __name__ == "__main__":
    app()
