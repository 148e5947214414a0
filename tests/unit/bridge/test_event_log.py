"""Tests for the bridge event audit log."""

from __future__ import annotations

from recall.errors import StoreUnavailable


def test_append_and_read_in_arrival_order(event_log):
    event_log.append("ingested", "Telegram", "m1", doc={"id": "d1"})
    event_log.append("duplicate", "telegram", "m1", reason="seen_or_existing")
    events = event_log.read()
    assert [e.status for e in events] == ["ingested", "duplicate"]
    assert events[0].channel == "telegram"
    assert events[0].payload_dict == {"doc": {"id": "d1"}}
    assert events[1].to_dict()["reason"] == "seen_or_existing"
    assert events[1].to_dict()["eventRef"] == "m1"


def test_read_returns_newest_tail(event_log):
    for i in range(10):
        event_log.append("ingested", "sms", f"m{i}")
    events = event_log.read(3)
    assert [e.event_ref for e in events] == ["m7", "m8", "m9"]


def test_read_limit_is_clamped(event_log):
    for i in range(3):
        event_log.append("ingested", "sms", f"m{i}")
    assert len(event_log.read(-5)) == 1
    assert len(event_log.read("junk")) == 3
    assert len(event_log.read(0)) == 3


def test_append_blank_channel_is_unknown(event_log):
    event = event_log.append("error", "", error="bad payload")
    assert event.channel == "unknown"
    assert event.seq is not None


def test_summary_counts(event_log):
    event_log.append("ingested", "telegram", "a")
    event_log.append("duplicate", "telegram", "a")
    event_log.append("error", "signal", error="boom")
    event_log.append("weird", "signal")
    summary = event_log.summary(rollout={"telegram": "draft_only"})

    assert summary["counts"] == {"total": 4, "ingested": 1, "duplicate": 1, "error": 1, "other": 1}
    assert summary["channels"]["telegram"]["total"] == 2
    assert summary["channels"]["signal"]["error"] == 1
    assert summary["channels"]["signal"]["other"] == 1
    assert summary["rollout"] == {"telegram": "draft_only"}
    assert summary["last_error_at"] is not None
    assert summary["last_event_at"] >= summary["last_error_at"]
    assert summary["limit"] == 200
    assert summary["sample_size"] == 4


def test_summary_limit_clamped(event_log):
    assert event_log.summary(10_000)["limit"] == 2_000


def test_summary_empty(event_log):
    summary = event_log.summary()
    assert summary["counts"]["total"] == 0
    assert summary["last_event_at"] is None


def test_store_failures_are_swallowed(event_log, database, monkeypatch):
    def _down(fn, timeout=None):
        raise StoreUnavailable("locked")

    monkeypatch.setattr(database, "write", _down)
    monkeypatch.setattr(database, "read", _down)
    assert event_log.append("ingested", "sms") is None
    assert event_log.read() == []
