"""Append-only audit log of inbound bridge events, stored in ``bridge_events``."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from recall.db.connection import Database
from recall.db.models import BridgeEvent
from recall.errors import StoreUnavailable
from recall.text import utc_now

logger = logging.getLogger(__name__)

EVENT_LIMIT_MAX = 500
SUMMARY_LIMIT_MAX = 2_000
_STATUSES = ("ingested", "duplicate", "error")


def _clamp(limit: Any, default: int, maximum: int) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = default
    if value == 0:
        value = default
    return max(1, min(value, maximum))


class BridgeEventLog:
    """One row per processing attempt, in arrival order."""

    def __init__(self, db: Database) -> None:
        self._db = db
        db.ensure_schema()

    def append(
        self,
        status: str,
        channel: str = "unknown",
        event_ref: str = "",
        **fields: Any,
    ) -> BridgeEvent | None:
        """Record one outcome. Store failures are logged, never raised to the caller."""
        event = BridgeEvent(
            at=utc_now(),
            channel=(channel or "unknown").lower(),
            status=status,
            event_ref=event_ref,
            payload=json.dumps(fields, default=str),
        )

        def _write(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                "INSERT INTO bridge_events (at, channel, status, event_ref, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (event.at, event.channel, event.status, event.event_ref, event.payload),
            )
            return cur.lastrowid

        try:
            event.seq = self._db.write(_write)
        except StoreUnavailable as exc:
            logger.warning("could not append bridge event (%s %s): %s", status, event_ref, exc)
            return None
        return event

    def read(self, limit: Any = 50) -> list[BridgeEvent]:
        """The newest *limit* events (clamped to 1..500), oldest first."""
        n = _clamp(limit, 50, EVENT_LIMIT_MAX)
        return self._tail(n)

    def summary(self, limit: Any = 200, rollout: dict[str, str] | None = None) -> dict[str, Any]:
        """Counts by status and by channel over the newest *limit* events (1..2000)."""
        n = _clamp(limit, 200, SUMMARY_LIMIT_MAX)
        events = self._tail(n)

        counts = {"total": len(events), "ingested": 0, "duplicate": 0, "error": 0, "other": 0}
        channels: dict[str, dict[str, Any]] = {}
        last_event_at: str | None = None
        last_error_at: str | None = None

        for event in events:
            status = event.status.lower()
            bucket = status if status in _STATUSES else "other"
            channel = event.channel.lower() or "unknown"
            counts[bucket] += 1

            per_channel = channels.setdefault(
                channel,
                {"ingested": 0, "duplicate": 0, "error": 0, "other": 0, "total": 0, "last_at": None},
            )
            per_channel["total"] += 1
            per_channel[bucket] += 1
            if event.at:
                per_channel["last_at"] = event.at
                last_event_at = event.at
                if status == "error":
                    last_error_at = event.at

        return {
            "limit": n,
            "sample_size": len(events),
            "counts": counts,
            "channels": channels,
            "rollout": dict(rollout or {}),
            "last_event_at": last_event_at,
            "last_error_at": last_error_at,
        }

    def _tail(self, n: int) -> list[BridgeEvent]:
        def _read(conn: sqlite3.Connection) -> list[BridgeEvent]:
            rows = conn.execute(
                "SELECT seq, at, channel, status, event_ref, payload FROM bridge_events "
                "ORDER BY seq DESC LIMIT ?",
                (n,),
            ).fetchall()
            return [BridgeEvent(**dict(r)) for r in reversed(rows)]

        try:
            return self._db.read(_read)
        except StoreUnavailable as exc:
            logger.warning("bridge event log unavailable: %s", exc)
            return []
