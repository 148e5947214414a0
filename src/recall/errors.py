"""Error taxonomy shared by the store, registry, and channel bridge.

Every error carries a short machine-readable ``kind`` plus a human-readable
``detail`` so UI/API layers can render both without string parsing.

There is no duplicate error: a duplicate inbound event is a normal terminal
status of the channel bridge.
"""

from __future__ import annotations

from dataclasses import dataclass


class RecallError(Exception):
    """Base class for all recall errors."""

    kind: str = "error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class ModelUnavailable(RecallError):
    """The embedding model could not be loaded or did not answer."""

    kind = "model_unavailable"


class StoreUnavailable(RecallError):
    """The SQLite backing store could not be opened, read, or written."""

    kind = "store_unavailable"


class NotFound(RecallError):
    """An operation referenced an unknown document, contact, note, or suggestion."""

    kind = "not_found"


class MalformedEvent(RecallError):
    """An inbound bridge event could not be normalized."""

    kind = "malformed_event"


class OperationTimeout(RecallError):
    """An embedding or index operation exceeded its caller-supplied timeout."""

    kind = "timeout"


@dataclass
class DeniedChannel:
    """One entry of a policy-gate rejection: which event, which channel, which mode."""

    index: int
    channel: str
    inbound_mode: str

    def to_dict(self) -> dict:
        return {"index": self.index, "channel": self.channel, "inboundMode": self.inbound_mode}


class PolicyDenied(RecallError):
    """Inbound ingestion is disabled for one or more channels in a batch."""

    kind = "policy_denied"

    def __init__(self, denied: list[DeniedChannel]) -> None:
        channels = ", ".join(sorted({d.channel for d in denied}))
        super().__init__(
            f"Channel bridge inbound is disabled for one or more channels: {channels}"
        )
        self.denied = denied

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["denied"] = [d.to_dict() for d in self.denied]
        return out
