"""Domain models for the recall database layer."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field


@dataclass
class Document:
    id: str
    text: str
    source: str = ""
    path: str = ""
    annotated: bool = False
    created_at: str | None = None
    seq: int | None = None  # set after insert; rowid of the vec/FTS entries

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "source": self.source,
            "path": self.path,
            "annotated": self.annotated,
        }


@dataclass
class Note:
    id: str
    text: str
    timestamp: str


@dataclass
class Suggestion:
    id: str
    contact_id: str
    type: str
    content: str
    timestamp: str
    status: str = "pending"  # pending | accepted | rejected


@dataclass
class Contact:
    """Canonical identity for a person.

    ``channels`` maps a channel kind (``phone``, ``email``, …) to a sorted,
    duplicate-free list of alias strings.
    """

    id: str
    handle: str
    display_name: str = ""
    profession: str = ""
    relationship: str = ""
    company: str = ""
    linkedin_url: str = ""
    last_contacted: str | None = None
    last_channel: str = ""
    channels: dict[str, list[str]] = field(default_factory=dict)
    notes: list[Note] = field(default_factory=list)
    pending_suggestions: list[Suggestion] = field(default_factory=list)
    rejected_suggestions: list[str] = field(default_factory=list)

    def aliases(self) -> list[str]:
        """Return every alias across all channel kinds."""
        return [v for values in self.channels.values() for v in values]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BridgeEvent:
    """One append-only audit record of an inbound-event processing attempt."""

    at: str
    channel: str
    status: str  # ingested | duplicate | error
    event_ref: str = ""
    payload: str = field(default_factory=lambda: "{}")
    seq: int | None = None

    @property
    def payload_dict(self) -> dict:
        return json.loads(self.payload)

    def to_dict(self) -> dict:
        out = {"at": self.at, "channel": self.channel, "status": self.status}
        if self.event_ref:
            out["eventRef"] = self.event_ref
        out.update(self.payload_dict)
        return out


@dataclass
class ConversationSummary:
    """Per-handle aggregate built by DocumentStore.conversation_index()."""

    handle: str
    count: int = 0
    latest_timestamp: str = ""
    latest_text: str = ""
    preview: str = ""
    path: str = ""
    source: str = ""
    channel: str = ""
