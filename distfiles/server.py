"""HTTP surface: ``POST /`` accepts uploads, anything else on ``/`` is a health check.

Failures come back as ``text/plain`` bodies holding a short stable tag
(``BADAUTH``, ``BADFORM_SHA512_HASH``, ...); the underlying detail only goes
to the server log.
"""

from __future__ import annotations

import base64
import binascii
import time

import anyio.to_thread
from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from distfiles.config import Settings
from distfiles.core import UploadPipeline
from distfiles.errors import FormValidationFailure, UploadFailure
from distfiles.logging import get_logger

PLAIN_HEADERS = {"X-Content-Type-Options": "nosniff"}

logger = get_logger(__name__)
access_logger = get_logger("distfiles.access")


class AccessLogMiddleware:
    """One log record per request: method, URI, status and body size."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        status = 0
        size = 0
        started = time.perf_counter()

        async def send_wrapper(message: Message) -> None:
            nonlocal status, size
            if message["type"] == "http.response.start":
                status = message["status"]
            elif message["type"] == "http.response.body":
                size += len(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            uri = scope.get("path", "")
            if scope.get("query_string"):
                uri += "?" + scope["query_string"].decode("latin-1")
            access_logger.info(
                f'{scope["method"]} "{uri}" {status} {size}',
                extra={
                    "method": scope["method"],
                    "uri": uri,
                    "status": status,
                    "size": size,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )


def _basic_auth_username(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(credentials.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, _ = decoded.partition(":")
    return username if sep else None


def _check_body(request: Request, settings: Settings) -> None:
    if not request.headers.get("content-type", "").startswith("multipart/form-data"):
        raise FormValidationFailure("BADFORM_FILE", "request body is not multipart/form-data")
    length = request.headers.get("content-length")
    if length is None:
        # chunked; counted by _capped_receive instead
        return
    if not length.isdigit():
        raise FormValidationFailure("BADFORM_FILE", f"bad Content-Length: {length!r}")
    if int(length) > settings.max_upload_bytes:
        raise FormValidationFailure(
            "BADFORM_FILE", f"body of {length} bytes exceeds {settings.max_upload_bytes}"
        )


def _capped_receive(receive: Receive, limit: int) -> Receive:
    """Wrap *receive* so a body growing past *limit* bytes fails mid-stream."""
    received = 0

    async def wrapper() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > limit:
                raise FormValidationFailure("BADFORM_FILE", f"body exceeds {limit} bytes")
        return message

    return wrapper


def _report(settings: Settings, failure: UploadFailure) -> PlainTextResponse:
    log = logger.error if failure.status >= 500 else logger.warning
    log(
        f"upload rejected: {failure.tag}",
        extra={"tag": failure.tag, "status": failure.status, "detail": failure.detail},
    )
    headers = dict(PLAIN_HEADERS)
    if failure.status == 401:
        headers["WWW-Authenticate"] = f'Basic realm="{settings.auth_realm}"'
    return PlainTextResponse(f"{failure.tag}\n", status_code=failure.status, headers=headers)


async def health(request: Request) -> PlainTextResponse:
    return PlainTextResponse("OK\n", headers=PLAIN_HEADERS)


async def upload(request: Request) -> PlainTextResponse:
    settings: Settings = request.app.state.settings
    pipeline: UploadPipeline = request.app.state.pipeline

    try:
        pipeline.authenticate(_basic_auth_username(request))
        _check_body(request, settings)
        capped = _capped_receive(request.receive, settings.max_upload_bytes)
        request = Request(request.scope, capped)
        try:
            form = await request.form()
        except (HTTPException, MultiPartException) as exc:
            raise FormValidationFailure("BADFORM_FILE", str(exc)) from exc
        try:
            upload_request = pipeline.parse_form(form)
            await anyio.to_thread.run_sync(pipeline.process, upload_request)
        finally:
            await form.close()
    except UploadFailure as failure:
        return _report(settings, failure)

    return await health(request)


def create_app(settings: Settings, pipeline: UploadPipeline | None = None) -> Starlette:
    app = Starlette(
        routes=[
            Route("/", upload, methods=["POST"]),
            Route("/", health),
        ],
        middleware=[Middleware(AccessLogMiddleware)],
    )
    app.state.settings = settings
    app.state.pipeline = pipeline or UploadPipeline(settings)
    return app
