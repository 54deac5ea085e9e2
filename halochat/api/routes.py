"""FastAPI endpoints for the HaloChat API.

GET  /                   - basic liveness
GET  /api/health         - model/mode configuration
POST /api/chat           - forward a chat turn upstream, return reply + cost
POST /api/reset-balance  - reset the server-held ledger (server mode only)

Every failure is handled here. STRICT_ERRORS picks the policy: strict returns
non-2xx with {"error"}, otherwise every outcome is a 200 with an apology in
`reply` and null usage.
"""

import asyncio
import json
import time
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Request
from python_multipart.exceptions import FormParserError
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.responses import JSONResponse, Response

from halochat.api.schemas import BalanceResponse, ChatResponse, ErrorResponse, HealthResponse
from halochat.core.chat_service import (
    EMPTY_INPUT_REPLY,
    EXHAUSTED_REPLY,
    UPSTREAM_APOLOGY,
    ChatService,
)
from halochat.core.config import Settings
from halochat.core.costs import BalanceExhausted
from halochat.core.llm_adapter import UpstreamFailure
from halochat.core.normalizer import (
    ATTACHMENT_FIELDS,
    ClientInputError,
    RawAttachment,
    normalize_chat,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

CLIENT_CLOSED_REQUEST = 499


class ClientDisconnected(Exception):
    """Client went away before the upstream call finished."""
    pass


class PayloadTooLarge(Exception):
    """Body exceeded max_body_bytes while being read."""
    pass


@router.get("/")
@router.head("/")
def root_health():
    """Basic root health check for deployment platforms."""
    return {"status": "ok", "message": "HaloTasker Claude API"}


@router.get("/api/health")
def health(req: Request):
    service: ChatService = req.app.state.chat_service
    registry = service.registry
    body = HealthResponse(
        status="ok" if service.adapter.is_healthy() else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        default_model=registry.default.model_id,
        modes=registry.modes(),
        available_models=registry.available_models(),
        deep_enabled=registry.deep_mode_enabled,
        balance_mode=service.settings.balance_mode,
    )
    return body.model_dump(by_alias=True)


@router.post("/api/reset-balance")
def reset_balance(req: Request):
    service: ChatService = req.app.state.chat_service
    if service.ledger is None:
        return error_response(404, "Balance is client-managed in this deployment")

    summary = service.ledger.reset()
    return BalanceResponse(status="ok", balance=float(summary.balance),
                           session=float(summary.session)).model_dump()


@router.post("/api/chat")
async def chat(req: Request):
    """Normalize -> prepare -> upstream (cancel on disconnect) -> settle."""
    start = time.monotonic()
    service: ChatService = req.app.state.chat_service
    strict = service.settings.strict_errors

    try:
        payload, uploads = await _read_payload(req, service.settings)
        chat_request = normalize_chat(payload, service.settings, service.registry, uploads)
    except PayloadTooLarge:
        logger.warning("request.too_large", path=req.url.path)
        return error_response(413, "Payload too large")
    except ClientInputError as e:
        logger.info("chat.invalid_input", reason=str(e))
        return _failure(strict, 400, str(e), service.rejected_reply(e))

    if chat_request.is_empty:
        logger.info("chat.empty_input", skipped=len(chat_request.skipped))
        return _failure(strict, 400, "Message or file required",
                        service.canned_reply(EMPTY_INPUT_REPLY, chat_request))

    logger.info(
        "chat.request",
        msg_len=len(chat_request.message),
        history=len(chat_request.history),
        attachments=len(chat_request.attachments),
        skipped=len(chat_request.skipped),
        model=chat_request.profile.model_id,
    )

    try:
        prepared = service.prepare(chat_request)
    except BalanceExhausted:
        return _ok(service.canned_reply(EXHAUSTED_REPLY, chat_request))

    try:
        result = await _cancel_on_disconnect(req, service.call_upstream(prepared))
    except ClientDisconnected:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except UpstreamFailure as e:
        logger.error(
            "chat.upstream_failed",
            error_type=type(e).__name__,
            model=prepared.profile.model_id,
            cause=repr(e.__cause__),
        )
        return _failure(strict, 502, "An error occurred", service.canned_reply(UPSTREAM_APOLOGY, chat_request))
    except Exception as e:
        logger.error("chat.unexpected_error", error_type=type(e).__name__, error=str(e))
        return _failure(strict, 500, "An error occurred", service.canned_reply(UPSTREAM_APOLOGY, chat_request))

    response = service.settle(chat_request, result)

    latency_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "chat.response",
        latency_ms=latency_ms,
        model=response.used_model,
        cost=response.costs.last if response.costs else 0,
        truncated=response.truncated,
    )
    return _ok(response)


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error).model_dump())


def _ok(response: ChatResponse) -> JSONResponse:
    return JSONResponse(status_code=200, content=response.model_dump(by_alias=True))


def _failure(strict: bool, status_code: int, error: str, fallback: ChatResponse) -> JSONResponse:
    """Strict: status + {"error"}. Lenient: 200 with the canned reply."""
    if strict:
        return error_response(status_code, error)
    return _ok(fallback)


async def _read_payload(req: Request, settings: Settings) -> tuple[dict, list[RawAttachment]]:
    """Parse a JSON or multipart body into (fields, uploaded files).

    The body ceiling is enforced on bytes actually received, so chunked
    requests without a Content-Length are held to it too.

    Raises:
        ClientInputError: If the body is malformed.
        PayloadTooLarge: If the body exceeds max_body_bytes.
    """
    content_type = req.headers.get("content-type", "").lower()

    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        try:
            form = await req.form()
        except (HTTPException, MultiPartException, FormParserError) as e:
            logger.info("chat.form_unparseable", error=str(e)[:200])
            raise ClientInputError("Invalid form body") from e

        items = form.multi_items()
        received = sum(
            (value.size or 0) if isinstance(value, UploadFile) else len(value) for _, value in items
        )
        if received > settings.max_body_bytes:
            raise PayloadTooLarge()

        payload: dict = {}
        uploads: list[RawAttachment] = []
        for key, value in items:
            if isinstance(value, UploadFile):
                uploads.append(await _upload_to_raw(value, settings.max_attachment_bytes))
            else:
                payload.setdefault(key, value)

        # Inline attachments may arrive as a JSON string field
        for name in ATTACHMENT_FIELDS:
            if isinstance(payload.get(name), str):
                try:
                    payload[name] = json.loads(payload[name])
                except json.JSONDecodeError:
                    payload[name] = []
        return payload, uploads

    chunks = []
    received = 0
    async for chunk in req.stream():
        received += len(chunk)
        if received > settings.max_body_bytes:
            raise PayloadTooLarge()
        chunks.append(chunk)
    body = b"".join(chunks)

    if not body.strip():
        return {}, []
    try:
        return json.loads(body), []
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ClientInputError("Invalid JSON body")


async def _upload_to_raw(upload: UploadFile, max_attachment_bytes: int) -> RawAttachment:
    name = upload.filename or "upload"
    mime = (upload.content_type or "").lower()
    size = getattr(upload, "size", None)
    if size is not None and size > max_attachment_bytes:
        # Oversized parts are never read into memory
        return RawAttachment(name=name, mime_type=mime, payload_bytes=b"", declared_size=size)
    data = await upload.read()
    return RawAttachment(name=name, mime_type=mime, payload_bytes=data, declared_size=size)


async def _wait_for_disconnect(req: Request) -> None:
    """Return once the ASGI server reports http.disconnect.

    Reads receive() directly; is_disconnected() does not see the message
    through @app.middleware("http") layers.
    """
    while True:
        message = await req.receive()
        if message["type"] == "http.disconnect":
            return


async def _cancel_on_disconnect(req: Request, coro):
    """Await `coro`, cancelling it if the client disconnects first.

    Raises:
        ClientDisconnected: If the client went away before completion.
    """
    task = asyncio.ensure_future(coro)
    listener = asyncio.ensure_future(_wait_for_disconnect(req))
    try:
        done, _ = await asyncio.wait({task, listener}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        if listener.exception() is not None:
            logger.warning("chat.disconnect_listener_failed", error=repr(listener.exception()))
            return await task
        task.cancel()
        logger.warning("chat.client_disconnected")
        raise ClientDisconnected()
    finally:
        for pending in (task, listener):
            if not pending.done():
                pending.cancel()
