"""Channel bridge: ingest inbound events into the document store exactly once.

Per event:  received → normalized → {ingested | duplicate | error}

Duplicate detection is layered:
  1. an in-process claim per document id, so concurrent identical events in
     this process are handled one at a time (the loser reports
     ``inflight_duplicate``);
  2. ``DocumentStore.exists()`` before embedding (``seen_or_existing``), so a
     known duplicate is never embedded again;
  3. ``DocumentStore.insert_missing()``, whose in-transaction check catches a
     writer in another process that got there first (``concurrent_insert``).

Every terminal state is appended to the bridge event log.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from recall.bridge.event_log import BridgeEventLog
from recall.bridge.normalizer import CanonicalEvent, normalize, parse_payload, to_document
from recall.bridge.policy import PolicyGate
from recall.config import BridgeCfg
from recall.db.models import BridgeEvent, Document
from recall.errors import MalformedEvent, RecallError
from recall.identity.registry import IdentityRegistry
from recall.store.document_store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of one inbound event."""

    status: str  # ingested | duplicate | dry-run | error
    event: CanonicalEvent | None = None
    document: Document | None = None
    index: int | None = None
    reason: str = ""
    error: str = ""

    @property
    def duplicate(self) -> bool:
        return self.status == "duplicate"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status}
        if self.index is not None:
            out["index"] = self.index
        if self.event is not None:
            out["event"] = self.event.to_dict()
        if self.document is not None:
            out["doc"] = {
                "id": self.document.id,
                "source": self.document.source,
                "path": self.document.path,
            }
        if self.status in ("ingested", "duplicate"):
            out["duplicate"] = self.duplicate
        if self.reason:
            out["reason"] = self.reason
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class BatchResult:
    accepted: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[IngestResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "skipped": self.skipped,
            "errors": self.errors,
            "total": self.total,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class _Prepared:
    index: int
    raw: Any
    event: CanonicalEvent | None = None
    error: MalformedEvent | None = None

    @property
    def dry_run(self) -> bool:
        return isinstance(self.raw, dict) and self.raw.get("dryRun") is True


@dataclass
class _Claim:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ChannelBridge:
    """Normalise, gate, deduplicate and store inbound channel events.

    Args:
        store: Destination document store.
        registry: Identity registry stamped with last-contacted metadata.
        event_log: Audit log receiving every outcome.
        cfg: Bridge configuration (policy modes, default event-log limit).
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: IdentityRegistry,
        event_log: BridgeEventLog,
        cfg: BridgeCfg | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._log = event_log
        self._cfg = cfg or BridgeCfg()
        self.policy = PolicyGate(self._cfg)
        self._claims: dict[str, _Claim] = {}
        self._claims_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def normalize(self, raw: Any) -> CanonicalEvent:
        return normalize(raw)

    def policy_gate(self, channel: str) -> str:
        return self.policy.mode(channel)

    def ingest_one(self, raw: Any, dry_run: bool = False) -> IngestResult:
        """Ingest one raw event, or with *dry_run* only compute its document.

        Raises:
            MalformedEvent: If the event cannot be normalised.
            PolicyDenied: If its channel is not open for inbound events.
        """
        prepared = self._prepare([raw])[0]
        if prepared.error is not None:
            self._log_malformed(prepared)
            raise prepared.error
        self.policy.check([(0, prepared.event)])
        return self._ingest_event(prepared.event, dry_run=dry_run)

    def ingest_many(
        self,
        raw_events: list[Any],
        fail_fast: bool = False,
        dry_run: bool = False,
    ) -> BatchResult:
        """Ingest a batch; all-or-nothing on policy, per-item on everything else.

        The policy gate runs over the whole batch before anything is written.
        With ``fail_fast=False`` a malformed or failing event is recorded as
        an ``error`` result and the rest of the batch continues. An event
        carrying ``"dryRun": true`` is only rendered, never stored.

        Raises:
            PolicyDenied: If any event's channel is closed.
            RecallError: The first failure, when *fail_fast* is set.
        """
        prepared = self._prepare(raw_events)
        self.policy.check((p.index, p.event) for p in prepared if p.event is not None)

        batch = BatchResult()
        for item in prepared:
            try:
                if item.error is not None:
                    self._log_malformed(item)
                    raise item.error
                result = self._ingest_event(item.event, dry_run=dry_run or item.dry_run)
            except (RecallError, ValueError) as exc:
                batch.errors += 1
                batch.results.append(
                    IngestResult(status="error", event=item.event, index=item.index, error=str(exc))
                )
                if fail_fast:
                    raise
                continue
            result.index = item.index
            if result.status == "ingested":
                batch.accepted += 1
            elif result.status == "duplicate":
                batch.skipped += 1
            batch.results.append(result)
        return batch

    def submit(self, payload: Any, dry_run: bool = False) -> dict[str, Any]:
        """Webhook entry point: accept a single event or a batch payload.

        Returns a JSON-ready dict whose ``status`` is ``ok``, ``duplicate``,
        ``partial`` or ``dry-run``.

        Raises:
            MalformedEvent: For an empty/non-object payload or a malformed single event.
            PolicyDenied: If any event targets a closed channel.
        """
        parsed = parse_payload(payload)
        events = parsed.events
        global_dry = dry_run or parsed.dry_run
        all_dry = global_dry or all(isinstance(e, dict) and e.get("dryRun") is True for e in events)

        if len(events) == 1:
            result = self.ingest_one(events[0], dry_run=all_dry)
            out = result.to_dict()
            if result.status == "ingested":
                out["status"] = "ok"
            return out

        batch = self.ingest_many(events, fail_fast=False, dry_run=global_dry)
        out = batch.to_dict()
        if all_dry:
            out["status"] = "dry-run"
        else:
            out["status"] = "partial" if batch.errors else "ok"
        return out

    def read_bridge_event_log(self, limit: Any = None) -> list[BridgeEvent]:
        return self._log.read(limit if limit is not None else self._cfg.event_log_limit)

    def bridge_summary(self, limit: Any = 200) -> dict[str, Any]:
        return self._log.summary(limit, rollout=self.policy.rollout())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _prepare(self, raw_events: list[Any]) -> list[_Prepared]:
        prepared = []
        for index, raw in enumerate(raw_events):
            item = _Prepared(index=index, raw=raw)
            try:
                item.event = normalize(raw)
            except MalformedEvent as exc:
                item.error = exc
            prepared.append(item)
        return prepared

    def _ingest_event(self, event: CanonicalEvent, dry_run: bool) -> IngestResult:
        doc = to_document(event)
        if dry_run:
            return IngestResult(status="dry-run", event=event, document=doc)

        with self._claim(doc.id) as waited:
            try:
                if self._store.exists(doc.id):
                    reason = "inflight_duplicate" if waited else "seen_or_existing"
                    return self._duplicate(event, doc, reason)
                if not self._store.insert_missing([doc]):
                    return self._duplicate(event, doc, "concurrent_insert")
            except Exception as exc:
                self._log.append(
                    "error",
                    event.channel,
                    event.message_id,
                    messageId=event.message_id,
                    peer=event.peer.to_dict(),
                    timestamp=event.timestamp,
                    doc=_doc_ref(doc),
                    error=str(exc),
                )
                logger.error("bridge ingest failed for %s: %s", doc.id, exc)
                raise

        self._touch_contact(event)
        self._log.append(
            "ingested",
            event.channel,
            event.message_id,
            messageId=event.message_id,
            peer=event.peer.to_dict(),
            timestamp=event.timestamp,
            attachments=[a.to_dict() for a in event.attachments],
            doc=_doc_ref(doc),
        )
        logger.info("bridge ingested %s from %s", doc.id, event.channel)
        return IngestResult(status="ingested", event=event, document=doc)

    def _duplicate(self, event: CanonicalEvent, doc: Document, reason: str) -> IngestResult:
        self._log.append(
            "duplicate",
            event.channel,
            event.message_id,
            messageId=event.message_id,
            peer=event.peer.to_dict(),
            doc=_doc_ref(doc),
            reason=reason,
        )
        return IngestResult(status="duplicate", event=event, document=doc, reason=reason)

    def _log_malformed(self, item: _Prepared) -> None:
        raw = item.raw if isinstance(item.raw, dict) else {}
        channel = str(raw.get("channel") or raw.get("source") or raw.get("platform") or "unknown")
        self._log.append("error", channel, error=str(item.error), index=item.index)

    def _touch_contact(self, event: CanonicalEvent) -> None:
        """Stamp last-contacted and adopt a real display name over an auto-generated one."""
        handle = event.counterparty_handle
        try:
            contact = self._registry.record_contact(handle, event.timestamp, event.channel)
            name = event.peer.display_name
            existing = (contact.display_name or "").strip()
            looks_auto = (
                not existing
                or existing.lower() == handle.lower()
                or existing.lstrip("+").isdigit()
            )
            if name and looks_auto:
                self._registry.update_profile(handle, display_name=name)
        except (RecallError, ValueError) as exc:
            logger.warning("could not update contact %s after bridge ingest: %s", handle, exc)

    @contextmanager
    def _claim(self, doc_id: str) -> Iterator[bool]:
        """Hold the in-process claim on *doc_id*; yields True if another holder went first."""
        with self._claims_guard:
            claim = self._claims.setdefault(doc_id, _Claim())
            claim.users += 1
        waited = not claim.lock.acquire(blocking=False)
        if waited:
            claim.lock.acquire()
        try:
            yield waited
        finally:
            claim.lock.release()
            with self._claims_guard:
                claim.users -= 1
                if claim.users == 0:
                    self._claims.pop(doc_id, None)


def _doc_ref(doc: Document) -> dict[str, str]:
    return {"id": doc.id, "source": doc.source, "path": doc.path}
