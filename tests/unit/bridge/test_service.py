"""Tests for ChannelBridge: ingestion, duplicates, policy, dry runs, submit()."""

from __future__ import annotations

import threading

import pytest

from recall.bridge.service import ChannelBridge
from recall.config import BridgeCfg, BridgeChannelCfg
from recall.errors import MalformedEvent, PolicyDenied


def _event(message_id: str = "m-1", channel: str = "telegram", **overrides):
    event = {
        "channel": channel,
        "peer": {"handle": "alice", "displayName": "Alice"},
        "messageId": message_id,
        "text": "see you at noon",
        "timestamp": "2024-01-01T10:00:00Z",
    }
    event.update(overrides)
    return event


@pytest.fixture
def strict_bridge(store, registry, event_log):
    cfg = BridgeCfg()
    cfg.channels["signal"] = BridgeChannelCfg(inbound_mode="disabled")
    return ChannelBridge(store, registry, event_log, cfg)


# ------------------------------------------------------------------
# ingest_one
# ------------------------------------------------------------------

def test_ingest_one_stores_document(bridge, store):
    result = bridge.ingest_one(_event())
    assert result.status == "ingested"
    doc = store.get(result.document.id)
    assert doc.text == "[2024-01-01T10:00:00.000Z] Alice: see you at noon"
    assert doc.path == "telegram://alice"
    assert [d.id for d in store.hybrid_search("noon")] == [doc.id]


def test_ingest_one_touches_contact(bridge, registry):
    bridge.ingest_one(_event())
    contact = registry.resolve("alice")
    assert contact.display_name == "Alice"
    assert contact.last_contacted == "2024-01-01T10:00:00.000Z"
    assert contact.last_channel == "telegram"


def test_ingest_one_keeps_curated_display_name(bridge, registry):
    registry.update_profile("alice", display_name="Alice Liddell")
    bridge.ingest_one(_event())
    assert registry.resolve("alice").display_name == "Alice Liddell"


def test_duplicate_event_is_not_stored_twice(bridge, store, fake_embedding):
    bridge.ingest_one(_event())
    calls = len(fake_embedding)
    second = bridge.ingest_one(_event())
    assert second.status == "duplicate"
    assert second.reason == "seen_or_existing"
    assert len(fake_embedding) == calls
    assert store.count() == 1


def test_concurrent_duplicates_ingest_once(bridge, store):
    barrier = threading.Barrier(6)
    results = []

    def _worker():
        barrier.wait()
        results.append(bridge.ingest_one(_event()))

    threads = [threading.Thread(target=_worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    statuses = sorted(r.status for r in results)
    assert statuses == ["duplicate"] * 5 + ["ingested"]
    assert store.count() == 1


def test_concurrent_insert_reported(bridge, store, monkeypatch):
    monkeypatch.setattr(store, "exists", lambda doc_id: False)
    bridge.ingest_one(_event())
    result = bridge.ingest_one(_event())
    assert result.status == "duplicate"
    assert result.reason == "concurrent_insert"


def test_ingest_one_malformed_raises_and_logs(bridge, event_log):
    with pytest.raises(MalformedEvent):
        bridge.ingest_one({"channel": "telegram", "text": "no peer"})
    events = event_log.read()
    assert events[-1].status == "error"
    assert events[-1].channel == "telegram"


def test_ingest_one_policy_denied(strict_bridge, store):
    with pytest.raises(PolicyDenied):
        strict_bridge.ingest_one(_event(channel="signal"))
    assert store.count() == 0


def test_ingest_one_dry_run_writes_nothing(bridge, store, event_log):
    result = bridge.ingest_one(_event(), dry_run=True)
    assert result.status == "dry-run"
    assert result.document.id.startswith("bridge-telegram-")
    assert store.count() == 0
    assert event_log.read() == []


def test_store_failure_is_logged_and_raised(bridge, store, event_log, monkeypatch):
    from recall.errors import ModelUnavailable

    def _down(docs, timeout=None):
        raise ModelUnavailable("provider down")

    monkeypatch.setattr(store, "insert_missing", _down)
    with pytest.raises(ModelUnavailable):
        bridge.ingest_one(_event())
    last = event_log.read()[-1]
    assert last.status == "error"
    assert last.payload_dict["error"] == "provider down"


# ------------------------------------------------------------------
# ingest_many
# ------------------------------------------------------------------

def test_ingest_many_counts(bridge):
    bridge.ingest_one(_event("m-1"))
    batch = bridge.ingest_many([_event("m-1"), _event("m-2"), _event("m-3")])
    assert (batch.accepted, batch.skipped, batch.errors, batch.total) == (2, 1, 0, 3)
    assert [r.index for r in batch.results] == [0, 1, 2]


def test_policy_denies_whole_batch(strict_bridge, store, event_log):
    raw = [_event("a", channel="signal"), _event("b"), _event("c", channel="signal")]
    with pytest.raises(PolicyDenied) as excinfo:
        strict_bridge.ingest_many(raw)
    assert [d.index for d in excinfo.value.denied] == [0, 2]
    assert store.count() == 0
    assert event_log.read() == []


def test_malformed_event_is_isolated(bridge, store):
    batch = bridge.ingest_many([_event("m-1"), {"channel": "nowhere"}, _event("m-3")])
    assert batch.accepted == 2
    assert batch.errors == 1
    assert batch.results[1].status == "error"
    assert batch.results[1].index == 1
    assert store.count() == 2


def test_fail_fast_stops_at_first_error(bridge, store):
    with pytest.raises(MalformedEvent):
        bridge.ingest_many([_event("m-1"), {"channel": "nowhere"}, _event("m-3")], fail_fast=True)
    assert store.count() == 1


def test_per_event_dry_run_in_batch(bridge, store):
    batch = bridge.ingest_many([_event("m-1", dryRun=True), _event("m-2")])
    assert [r.status for r in batch.results] == ["dry-run", "ingested"]
    assert store.count() == 1


# ------------------------------------------------------------------
# submit
# ------------------------------------------------------------------

def test_submit_single_ok(bridge):
    out = bridge.submit(_event())
    assert out["status"] == "ok"
    assert out["duplicate"] is False
    assert out["doc"]["path"] == "telegram://alice"
    assert out["event"]["peer"]["handle"] == "alice"


def test_submit_single_duplicate(bridge):
    bridge.submit(_event())
    out = bridge.submit(_event())
    assert out["status"] == "duplicate"
    assert out["duplicate"] is True


def test_submit_single_dry_run(bridge, store):
    out = bridge.submit(_event(dryRun=True))
    assert out["status"] == "dry-run"
    assert store.count() == 0


def test_submit_batch_partial(bridge):
    out = bridge.submit({"events": [_event("m-1"), {"channel": "sms"}]})
    assert out["status"] == "partial"
    assert out["accepted"] == 1
    assert out["errors"] == 1
    assert out["total"] == 2


def test_submit_batch_ok(bridge):
    out = bridge.submit([_event("m-1"), _event("m-2")])
    assert out["status"] == "ok"
    assert out["accepted"] == 2


def test_submit_batch_dry_run(bridge, store):
    out = bridge.submit({"events": [_event("m-1"), _event("m-2")], "dryRun": True})
    assert out["status"] == "dry-run"
    assert store.count() == 0


def test_submit_empty_payload_raises(bridge):
    with pytest.raises(MalformedEvent):
        bridge.submit([])


# ------------------------------------------------------------------
# Event log views
# ------------------------------------------------------------------

def test_read_bridge_event_log(bridge):
    bridge.submit(_event("m-1"))
    bridge.submit(_event("m-1"))
    events = bridge.read_bridge_event_log()
    assert [e.status for e in events] == ["ingested", "duplicate"]
    assert events[1].payload_dict["reason"] == "seen_or_existing"


def test_bridge_summary(strict_bridge):
    strict_bridge.submit(_event("m-1"))
    summary = strict_bridge.bridge_summary()
    assert summary["counts"]["ingested"] == 1
    assert summary["rollout"]["signal"] == "disabled"
    assert summary["rollout"]["telegram"] == "draft_only"


def test_policy_gate_and_normalize(strict_bridge):
    assert strict_bridge.policy_gate("signal") == "disabled"
    assert strict_bridge.policy_gate("telegram") == "draft_only"
    assert strict_bridge.normalize(_event()).counterparty_handle == "alice"
