"""Inbound event normalisation for the channel bridge.

Webhooks and userscripts post loosely-shaped JSON. Everything is turned into a
CanonicalEvent here, at the boundary, before any business logic runs:

  raw payload ──parse_payload()──▶ SingleEvent | BatchEvents
  raw event   ──normalize()──────▶ CanonicalEvent ──to_document()──▶ Document

normalize() raises MalformedEvent for anything it cannot make sense of.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Union

from recall.db.models import Document
from recall.errors import MalformedEvent
from recall.text import parse_timestamp, strip_path_scheme, utc_now

SUPPORTED_CHANNELS: frozenset[str] = frozenset(
    [
        "imessage",
        "whatsapp",
        "email",
        "telegram",
        "discord",
        "messenger",
        "instagram",
        "linkedin",
        "signal",
        "sms",
        "viber",
    ]
)

CHANNEL_ALIASES: dict[str, str] = {
    "imsg": "imessage",
    "text": "sms",
    "mail": "email",
    "gmail": "email",
    "imap": "email",
    "wa": "whatsapp",
    "tg": "telegram",
}

SOURCE_LABELS: dict[str, str] = {
    "imessage": "iMessage",
    "whatsapp": "WhatsApp",
    "email": "Mail",
    "telegram": "Telegram",
    "discord": "Discord",
    "messenger": "Messenger",
    "instagram": "Instagram",
    "linkedin": "LinkedIn",
    "signal": "Signal",
    "sms": "SMS",
    "viber": "Viber",
}

_WHATSAPP_SUFFIX_RE = re.compile(r"@(?:s\.whatsapp\.net|g\.us|lid)$", re.IGNORECASE)


# ------------------------------------------------------------------
# Canonical shapes
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Peer:
    id: str
    handle: str
    display_name: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "handle": self.handle, "displayName": self.display_name}


@dataclass(frozen=True)
class Attachment:
    id: str
    type: str = "file"
    name: str = ""
    url: str = ""
    mime_type: str = ""
    size: float | None = None

    @property
    def label(self) -> str:
        return self.name or self.url or self.id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "url": self.url,
            "mimeType": self.mime_type,
            "size": self.size,
        }


@dataclass(frozen=True)
class CanonicalEvent:
    """A channel-agnostic inbound message."""

    channel: str
    peer: Peer
    message_id: str
    text: str
    timestamp: str
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)

    @property
    def counterparty_handle(self) -> str:
        """Handle the message is filed under in the store and the registry."""
        return self.peer.handle

    def to_dict(self) -> dict:
        return {
            "channel": self.channel,
            "peer": self.peer.to_dict(),
            "messageId": self.message_id,
            "text": self.text,
            "timestamp": self.timestamp,
            "attachments": [a.to_dict() for a in self.attachments],
        }


@dataclass(frozen=True)
class SingleEvent:
    """Inbound payload carrying one event object."""

    event: dict[str, Any]
    dry_run: bool = False

    @property
    def events(self) -> list[dict[str, Any]]:
        return [self.event]


@dataclass(frozen=True)
class BatchEvents:
    """Inbound payload carrying a list of events (bare array or ``{"events": [...]}``)."""

    events: list[Any]
    dry_run: bool = False


InboundPayload = Union[SingleEvent, BatchEvents]


def parse_payload(payload: Any) -> InboundPayload:
    """Classify a raw webhook body as a single event or a batch.

    Raises:
        MalformedEvent: If the payload is neither an object nor a non-empty list.
    """
    if isinstance(payload, list):
        if not payload:
            raise MalformedEvent("Inbound payload is empty.")
        return BatchEvents(events=list(payload))
    if not isinstance(payload, dict):
        raise MalformedEvent("Inbound payload must be a JSON object or array.")
    dry_run = payload.get("dryRun") is True
    if isinstance(payload.get("events"), list):
        if not payload["events"]:
            raise MalformedEvent("Inbound payload is empty.")
        return BatchEvents(events=list(payload["events"]), dry_run=dry_run)
    return SingleEvent(event=payload, dry_run=dry_run)


# ------------------------------------------------------------------
# Field normalisation
# ------------------------------------------------------------------


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _first(data: dict[str, Any], *keys: str) -> Any:
    """First truthy value among *keys* (missing, empty and zero values are skipped)."""
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def normalize_channel(value: Any) -> str:
    raw = _text(value).lower()
    channel = CHANNEL_ALIASES.get(raw, raw)
    if not channel or channel not in SUPPORTED_CHANNELS:
        raise MalformedEvent(f"Unsupported or missing channel: {value}")
    return channel


def normalize_timestamp(value: Any) -> str:
    """Canonical timestamp for *value*; missing or unparsable values mean now."""
    return parse_timestamp(value) or utc_now()


def normalize_handle(channel: str, value: Any) -> str:
    handle = strip_path_scheme(_text(value))
    if not handle:
        return ""
    if channel == "email":
        return handle.lower()
    if channel == "whatsapp":
        return _WHATSAPP_SUFFIX_RE.sub("", handle).strip()
    if channel == "telegram":
        return handle.lstrip("@").strip().lower()
    return handle


def normalize_peer(raw: Any, channel: str) -> Peer:
    if isinstance(raw, (str, int, float)) and not isinstance(raw, bool):
        handle = normalize_handle(channel, raw)
        if not handle:
            raise MalformedEvent("Missing peer handle")
        return Peer(id=handle, handle=handle)

    peer = raw if isinstance(raw, dict) else {}
    peer_id = _text(_first(peer, "id", "externalId", "userId", "uid"))
    handle = normalize_handle(
        channel,
        _first(peer, "handle", "username", "email", "phone") or peer_id or peer.get("name"),
    )
    if not handle:
        raise MalformedEvent("Missing peer handle")
    display_name = _text(_first(peer, "displayName", "name", "label"))
    return Peer(id=peer_id or handle, handle=handle, display_name=display_name)


def normalize_attachments(raw: Any) -> tuple[Attachment, ...]:
    if isinstance(raw, list):
        items = raw
    else:
        items = [raw] if raw else []

    out: list[Attachment] = []
    for idx, item in enumerate(items):
        fallback_id = f"att-{idx + 1}"
        if isinstance(item, str):
            if item.strip():
                out.append(Attachment(id=fallback_id, url=item.strip()))
            continue
        if not isinstance(item, dict):
            continue

        mime_type = _text(_first(item, "mimeType", "mimetype", "mime"))
        kind = _text(item.get("type"))
        if not kind:
            major = mime_type.split("/", 1)[0]
            kind = major if major in ("image", "video", "audio") else "file"
        name = _text(_first(item, "name", "filename", "title"))
        url = _text(_first(item, "url", "href", "downloadUrl"))
        try:
            size = float(item["size"]) if item.get("size") is not None else None
        except (TypeError, ValueError):
            size = None
        if not name and not url and size is None and not mime_type:
            continue
        out.append(
            Attachment(
                id=_text(_first(item, "id", "attachmentId")) or fallback_id,
                type=kind,
                name=name,
                url=url,
                mime_type=mime_type,
                size=size,
            )
        )
    return tuple(out)


def normalize(raw: Any) -> CanonicalEvent:
    """Map an arbitrary inbound payload onto a CanonicalEvent.

    Raises:
        MalformedEvent: Unsupported channel, no peer handle, or neither text
            nor attachments.
    """
    payload = raw if isinstance(raw, dict) else {}
    channel = normalize_channel(_first(payload, "channel", "source", "platform"))
    timestamp = normalize_timestamp(
        _first(payload, "timestamp", "ts", "createdAt", "created_at", "date")
    )
    peer = normalize_peer(_first(payload, "peer", "from", "contact", "sender", "handle"), channel)
    text = _text(_first(payload, "text", "message", "body", "content", "caption"))
    attachments = normalize_attachments(_first(payload, "attachments", "files", "media"))
    if not text and not attachments:
        raise MalformedEvent("Inbound event must include text or attachments")

    message_id = _text(_first(payload, "messageId", "message_id", "id", "eventId", "event_id"))
    if not message_id:
        fingerprint = json.dumps(
            {
                "channel": channel,
                "peer": peer.handle,
                "timestamp": timestamp,
                "text": text,
                "attachments": [a.id or a.url or a.name for a in attachments],
            },
            separators=(",", ":"),
        )
        message_id = hashlib.sha1(fingerprint.encode()).hexdigest()

    return CanonicalEvent(
        channel=channel,
        peer=peer,
        message_id=message_id,
        text=text,
        timestamp=timestamp,
        attachments=attachments,
    )


# ------------------------------------------------------------------
# Canonical document
# ------------------------------------------------------------------


def source_for_channel(channel: str) -> str:
    return SOURCE_LABELS.get(channel, channel)


def path_for_event(event: CanonicalEvent) -> str:
    if event.channel == "email":
        return f"mailto:{event.counterparty_handle}"
    return f"{event.channel}://{event.counterparty_handle}"


def bridge_document_id(channel: str, message_id: str) -> str:
    digest = hashlib.sha1(f"{channel}:{message_id}".encode()).hexdigest()[:20]
    return f"bridge-{channel}-{digest}"


def to_document(event: CanonicalEvent) -> Document:
    """Render *event* as the Document the store persists. Same event → same id."""
    sender = event.peer.display_name or event.counterparty_handle
    body = event.text or "[attachment]"
    tail = ""
    labels = [a.label for a in event.attachments if a.label]
    if labels:
        tail = "\n[attachments] " + " | ".join(labels)
    return Document(
        id=bridge_document_id(event.channel, event.message_id),
        text=f"[{event.timestamp}] {sender}: {body}{tail}",
        source=source_for_channel(event.channel),
        path=path_for_event(event),
    )
