"""Helpers for message text, timestamps, and channel paths.

Document text is conventionally ``"[<ISO8601>] <speaker>: <body>"`` and
document paths are ``<scheme><handle>`` (``imessage://+1555…``,
``mailto:a@b.c``). These helpers parse both without touching the store.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*:(?://)?", re.IGNORECASE)
_BRACKET_RE = re.compile(r"\[(.*?)\]")
_SUBJECT_RE = re.compile(r"Subject: (.*?)(?:\n|$)")


def format_timestamp(dt: datetime) -> str:
    """Render *dt* as a UTC ISO-8601 string with millisecond precision.

    The fixed width (``2024-01-01T10:00:00.000Z``) keeps lexicographic order
    identical to chronological order, which the store and registry rely on.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def parse_timestamp(value: Any) -> str | None:
    """Best-effort conversion of *value* to a canonical timestamp string.

    Accepts datetimes, epoch seconds or milliseconds (numbers or digit
    strings), and ISO-8601 strings. Returns None when nothing parses.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))

    raw = str(value).strip()
    if not raw:
        return None
    if raw.isdigit():
        return _from_epoch(float(raw))
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        return format_timestamp(datetime.fromisoformat(raw))
    except ValueError:
        return None


def _from_epoch(value: float) -> str | None:
    seconds = value / 1000 if value > 1e12 else value
    try:
        return format_timestamp(datetime.fromtimestamp(seconds, tz=timezone.utc))
    except (OverflowError, OSError, ValueError):
        return None


def extract_timestamp(text: str) -> str | None:
    """Return the raw bracketed timestamp at the start of a message, if any."""
    if not text:
        return None
    m = _BRACKET_RE.search(text)
    return m.group(1) if m else None


def extract_date(text: str) -> str | None:
    """Return the bracketed timestamp of *text* in canonical form, or None."""
    raw = extract_timestamp(text)
    return parse_timestamp(raw) if raw else None


def strip_message_prefix(text: str) -> str:
    """Drop the ``[ts] speaker: `` prefix from a message body."""
    if not text:
        return ""
    idx = text.find(": ")
    return text[idx + 2:] if idx >= 0 else text


def extract_subject(text: str) -> str | None:
    m = _SUBJECT_RE.search(text or "")
    if m and m.group(1).strip():
        return m.group(1).strip()
    return None


def strip_path_scheme(path: str) -> str:
    """Return the handle part of a document path (``imessage://+1555`` → ``+1555``)."""
    return _SCHEME_RE.sub("", str(path or ""), count=1).strip()


def channel_from_document(path: str, source: str = "") -> str:
    """Infer the channel of a stored document from its path scheme or source tag."""
    p = (path or "").lower()
    s = (source or "").lower()
    if p.startswith("whatsapp://") or "whatsapp" in s:
        return "whatsapp"
    if p.startswith("mailto:") or "mail" in s:
        return "email"
    for scheme in ("imessage", "telegram", "discord", "signal", "viber", "linkedin", "sms",
                   "messenger", "instagram"):
        if p.startswith(f"{scheme}://") or scheme in s:
            return scheme
    return "imessage"


def history_prefix(identifier: str) -> str:
    """Default history path prefix for a bare handle: mailto for emails, else iMessage."""
    return f"mailto:{identifier}" if "@" in identifier else f"imessage://{identifier}"
