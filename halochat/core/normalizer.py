"""Request normalization: loosely-typed client payload -> NormalizedChat.

Every accepted field name is listed here, in priority order. Anything not
listed is ignored. Attachments are admitted, classified or skipped with a
reason; none disappear silently.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

import structlog

from halochat.core.config import Settings
from halochat.core.model_registry import ModelProfile, ModelRegistry

logger = structlog.get_logger(__name__)

MESSAGE_FIELDS = ("message", "prompt", "input", "text", "content")
MODEL_FIELDS = ("model", "thinkingMode", "thinking_mode", "mode")
ATTACHMENT_FIELDS = ("attachments", "files")
# Exact (4 dp) running figures win over the cent display figures
SESSION_COST_FIELDS = ("sessionCostExact", "sessionExact", "sessionCost", "session_cost")
BALANCE_FIELDS = ("balanceExact", "balance")

ATTACHMENT_NAME_FIELDS = ("name", "filename")
ATTACHMENT_TYPE_FIELDS = ("type", "mimeType", "mime_type", "media_type")
ATTACHMENT_DATA_FIELDS = ("base64", "data", "content")

ALLOWED_ROLES = ("user", "assistant")
SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w=-]+)*;base64,", re.IGNORECASE)


class ClientInputError(Exception):
    """Request cannot be forwarded: missing, empty or oversized input.

    `session_cost`/`balance` carry the client figures when the body was
    readable enough to parse them, so a rejection can echo them unchanged.
    """

    def __init__(self, message: str, session_cost: Decimal | None = None, balance: Decimal | None = None):
        super().__init__(message)
        self.session_cost = session_cost
        self.balance = balance


@dataclass
class RawAttachment:
    """One attachment as received, before admission.

    Exactly one of `payload_b64` (inline JSON) or `payload_bytes` (multipart
    part) is set.
    """
    name: str
    mime_type: str
    payload_b64: str | None = None
    payload_bytes: bytes | None = None
    declared_size: int | None = None


@dataclass
class Attachment:
    """An admitted attachment.

    Attributes:
        kind: "image" or "document".
        data: Base64 payload for images, decoded (truncated) text for documents.
    """
    name: str
    mime_type: str
    kind: str
    data: str


@dataclass
class SkippedAttachment:
    name: str
    reason: str


@dataclass
class NormalizedChat:
    message: str
    history: list[dict] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    skipped: list[SkippedAttachment] = field(default_factory=list)
    profile: ModelProfile | None = None
    requested_model: str | None = None
    session_cost: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")

    @property
    def is_empty(self) -> bool:
        return not self.message and not self.attachments


def first_present(payload: dict, names: tuple[str, ...]):
    """Return the first value under `names` that is not None or blank."""
    for name in names:
        value = payload.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def extract_message(payload: dict, max_length: int) -> str:
    """First non-blank string among the message aliases, trimmed.

    Raises:
        ClientInputError: If the message exceeds max_length.
    """
    for name in MESSAGE_FIELDS:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            if len(value) > max_length:
                raise ClientInputError("Message too long")
            return value.strip()
    return ""


def sanitize_history(history, max_messages: int, max_length: int) -> list[dict]:
    """Keep the last `max_messages` turns, drop malformed ones, trim content.

    Accepts a list or a JSON-encoded list. Idempotent: sanitizing the output
    again returns an equal list.
    """
    if isinstance(history, str):
        try:
            history = json.loads(history) if history.strip() else []
        except json.JSONDecodeError:
            logger.info("normalize.history_unparseable")
            return []

    if not isinstance(history, list):
        return []

    recent = history[-max_messages:] if max_messages > 0 else []
    sanitized = []
    for turn in recent:
        if not isinstance(turn, dict):
            continue
        role = turn.get("role")
        content = turn.get("content")
        if role not in ALLOWED_ROLES or not isinstance(content, str):
            continue
        if len(content) > max_length or not content.strip():
            continue
        sanitized.append({"role": role, "content": content.strip()})
    return sanitized


def parse_amount(value, default: Decimal) -> Decimal:
    """Coerce a client-supplied money figure to a non-negative Decimal."""
    if value is None or isinstance(value, bool):
        return default
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not amount.is_finite():
        return default
    return max(amount, Decimal("0"))


def parse_client_figures(payload: dict, settings: Settings) -> tuple[Decimal, Decimal]:
    """(session_cost, balance) as sent by the client, defaults when absent."""
    session_cost = parse_amount(first_present(payload, SESSION_COST_FIELDS), Decimal("0"))
    balance = parse_amount(first_present(payload, BALANCE_FIELDS), settings.starting_balance)
    return session_cost, balance


def raw_attachments_from_json(items) -> list[RawAttachment]:
    """Convert inline attachment objects into RawAttachments.

    Non-mapping entries become RawAttachments with no payload so they are
    reported as skipped instead of vanishing.
    """
    if not isinstance(items, list):
        return []

    raws = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raws.append(RawAttachment(name=f"attachment-{index + 1}", mime_type=""))
            continue

        name = first_present(item, ATTACHMENT_NAME_FIELDS)
        mime = first_present(item, ATTACHMENT_TYPE_FIELDS)
        data = first_present(item, ATTACHMENT_DATA_FIELDS)
        size = item.get("size")

        payload = data if isinstance(data, str) else None
        if payload is not None:
            match = _DATA_URL.match(payload)
            if match:
                payload = payload[match.end():]
                mime = mime or match.group("mime")

        raws.append(RawAttachment(
            name=str(name) if name is not None else f"attachment-{index + 1}",
            mime_type=str(mime or "").strip().lower(),
            payload_b64=payload,
            declared_size=size if isinstance(size, int) and not isinstance(size, bool) else None,
        ))
    return raws


def _estimated_size(raw: RawAttachment) -> int:
    if raw.payload_bytes is not None:
        return len(raw.payload_bytes)
    if raw.payload_b64 is not None:
        stripped = raw.payload_b64.strip()
        return len(stripped) * 3 // 4 - stripped[-2:].count("=")
    return 0


def admit_attachment(raw: RawAttachment, max_bytes: int, max_chars: int):
    """Classify one attachment.

    Returns:
        Either an Attachment or a SkippedAttachment, never both.
    """
    size = max(raw.declared_size or 0, _estimated_size(raw))
    if size > max_bytes:
        return SkippedAttachment(raw.name, "too_large")

    if raw.payload_bytes is None and raw.payload_b64 is None:
        return SkippedAttachment(raw.name, "missing_data")

    mime = raw.mime_type
    is_image = mime.startswith("image/")
    if is_image and mime not in SUPPORTED_IMAGE_TYPES:
        return SkippedAttachment(raw.name, "unsupported_type")

    if raw.payload_bytes is not None:
        payload = raw.payload_bytes
        b64 = base64.b64encode(payload).decode("ascii") if is_image else None
    else:
        b64 = "".join(raw.payload_b64.split())
        try:
            payload = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError):
            return SkippedAttachment(raw.name, "invalid_encoding")

    if is_image:
        return Attachment(raw.name, mime, "image", b64)

    text = payload.decode("utf-8", errors="replace")[:max_chars]
    return Attachment(raw.name, mime or "text/plain", "document", text)


def normalize_chat(
    payload: dict,
    settings: Settings,
    registry: ModelRegistry,
    uploads: list[RawAttachment] | None = None,
) -> NormalizedChat:
    """Turn a raw request body into a NormalizedChat.

    Args:
        payload: Parsed JSON body or multipart form fields.
        settings: Runtime limits and defaults.
        registry: Model lookup for the selector.
        uploads: Multipart file parts, appended after inline attachments.

    Returns:
        NormalizedChat. `is_empty` is True when there is nothing to forward;
        the caller decides whether that is an error or a canned reply.

    Raises:
        ClientInputError: If the payload is not an object or the message is too long.
    """
    if not isinstance(payload, dict):
        raise ClientInputError("Request body must be an object")

    session_cost, balance = parse_client_figures(payload, settings)
    try:
        message = extract_message(payload, settings.max_message_length)
    except ClientInputError as e:
        raise ClientInputError(str(e), session_cost, balance) from e
    history = sanitize_history(
        payload.get("history"), settings.max_history_messages, settings.max_message_length
    )

    raws = raw_attachments_from_json(first_present(payload, ATTACHMENT_FIELDS))
    raws.extend(uploads or [])

    attachments: list[Attachment] = []
    skipped: list[SkippedAttachment] = []
    for raw in raws:
        result = admit_attachment(raw, settings.max_attachment_bytes, settings.max_document_chars)
        if isinstance(result, SkippedAttachment):
            logger.info("normalize.attachment_skipped", name=result.name[:80], reason=result.reason)
            skipped.append(result)
        else:
            attachments.append(result)

    selector = first_present(payload, MODEL_FIELDS)

    return NormalizedChat(
        message=message,
        history=history,
        attachments=attachments,
        skipped=skipped,
        profile=registry.resolve(selector),
        requested_model=selector if isinstance(selector, str) else None,
        session_cost=session_cost,
        balance=balance,
    )
