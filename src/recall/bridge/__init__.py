"""Channel bridge: normalise inbound events and ingest them exactly once."""

from recall.bridge.event_log import BridgeEventLog
from recall.bridge.normalizer import CanonicalEvent, normalize, parse_payload, to_document
from recall.bridge.policy import PolicyGate
from recall.bridge.service import BatchResult, ChannelBridge, IngestResult

__all__ = [
    "BatchResult",
    "BridgeEventLog",
    "CanonicalEvent",
    "ChannelBridge",
    "IngestResult",
    "PolicyGate",
    "normalize",
    "parse_payload",
    "to_document",
]
