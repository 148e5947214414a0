"""Tests for IdentityRegistry: resolution, last-contacted, merge, notes, suggestions."""

from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from recall.errors import NotFound, StoreUnavailable
from recall.identity.registry import IdentityRegistry, classify_handle


def _ts(day: int, hour: int = 10) -> str:
    return f"2024-01-{day:02d}T{hour:02d}:00:00.000Z"


# ------------------------------------------------------------------
# record_contact / resolve
# ------------------------------------------------------------------

def test_record_contact_creates_contact(registry):
    contact = registry.record_contact("+15550001", "2024-01-01T10:00:00Z", "imessage")
    assert contact.handle == "+15550001"
    assert contact.display_name == "+15550001"
    assert contact.channels == {"phone": ["+15550001"]}
    assert contact.last_contacted == _ts(1)
    assert contact.last_channel == "imessage"


def test_record_contact_email_alias(registry):
    contact = registry.record_contact("ann@example.com", _ts(1), "email")
    assert contact.channels == {"email": ["ann@example.com"]}


@pytest.mark.parametrize("handle,timestamp", [("", _ts(1)), ("   ", _ts(1)), ("+1555", "nope")])
def test_record_contact_rejects_bad_input(registry, handle, timestamp):
    with pytest.raises(ValueError):
        registry.record_contact(handle, timestamp)


def test_record_contact_never_moves_backwards(registry):
    registry.record_contact("+1555", _ts(5), "imessage")
    contact = registry.record_contact("+1555", _ts(3), "whatsapp")
    assert contact.last_contacted == _ts(5)
    assert contact.last_channel == "imessage"
    contact = registry.record_contact("+1555", _ts(6), "whatsapp")
    assert contact.last_contacted == _ts(6)
    assert contact.last_channel == "whatsapp"


def test_record_contact_blank_channel_keeps_previous(registry):
    registry.record_contact("+1555", _ts(1), "telegram")
    contact = registry.record_contact("+1555", _ts(2))
    assert contact.last_channel == "telegram"


def test_concurrent_record_contact_keeps_maximum(registry):
    stamps = [_ts(day, hour) for day in range(1, 21) for hour in (8, 16)]
    random.Random(7).shuffle(stamps)
    registry.record_contact("+15550009", stamps[0])

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda ts: registry.record_contact("+15550009", ts, "sms"), stamps))

    assert registry.resolve("+15550009").last_contacted == max(stamps)
    assert len(registry.list_contacts()) == 1


def test_concurrent_first_contact_creates_one_row(registry):
    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(lambda day: registry.record_contact("new@x.y", _ts(day)), range(1, 13)))
    assert registry.channel_stats()["total"] == 1


def test_resolve_is_case_insensitive(registry):
    registry.record_contact("Ann@Example.com", _ts(1))
    assert registry.resolve("ann@example.com").handle == "Ann@Example.com"
    assert registry.resolve("  ANN@EXAMPLE.COM ") is not None


def test_resolve_by_display_name(registry):
    registry.update_profile("+1555", display_name="Ann Lee")
    assert registry.resolve("ann lee").handle == "+1555"


def test_resolve_prefers_handle_over_display_name(registry):
    registry.update_profile("+1555", display_name="bob")
    registry.record_contact("bob", _ts(1))
    assert registry.resolve("bob").handle == "bob"


def test_record_contact_ignores_other_contacts_display_name(registry):
    registry.update_profile("+1555", display_name="bob")
    contact = registry.record_contact("bob", "2024-05-01T00:00:00Z", "telegram")
    assert contact.handle == "bob"
    assert registry.resolve("+1555").last_contacted is None
    assert registry.resolve("+1555").last_channel == ""
    assert registry.channel_stats()["total"] == 2


def test_update_profile_ignores_other_contacts_display_name(registry):
    registry.update_profile("+1555", display_name="bob")
    registry.update_profile("bob", company="Acme")
    assert registry.resolve("+1555").company == ""
    assert registry.resolve("bob").handle == "bob"


def test_resolve_unknown(registry):
    assert registry.resolve("nobody") is None
    assert registry.resolve("") is None


def test_all_handles(registry):
    a = registry.record_contact("+1555", _ts(1))
    b = registry.record_contact("ann@x.y", _ts(1))
    registry.merge(a.id, b.id)
    assert registry.all_handles("ann@x.y") == ["+1555", "ann@x.y"]
    assert registry.all_handles("stranger") == ["stranger"]


def test_list_contacts_most_recent_first(registry):
    registry.record_contact("old", _ts(1))
    registry.record_contact("new", _ts(9))
    registry.update_profile("never")
    assert [c.handle for c in registry.list_contacts()] == ["new", "old", "never"]


# ------------------------------------------------------------------
# Profiles
# ------------------------------------------------------------------

def test_update_profile_creates_and_sets(registry):
    contact = registry.update_profile("+1555", profession="Engineer", company="Acme")
    assert contact.profession == "Engineer"
    assert contact.company == "Acme"
    assert registry.resolve("+1555").id == contact.id


def test_update_profile_rejects_unknown_fields(registry):
    with pytest.raises(ValueError, match="favourite_colour"):
        registry.update_profile("+1555", favourite_colour="blue")


def test_classify_handle():
    assert classify_handle("a@b.c") == "email"
    assert classify_handle("+15550001") == "phone"


# ------------------------------------------------------------------
# Merge
# ------------------------------------------------------------------

def test_merge_moves_aliases_and_notes(registry):
    keep = registry.record_contact("+15550001", _ts(1), "imessage")
    drop = registry.record_contact("ann@example.com", _ts(4), "email")
    registry.add_note("+15550001", "met at conference")
    registry.add_note("ann@example.com", "likes tea")
    registry.add_note("ann@example.com", "met at conference")

    merged = registry.merge(keep.id, drop.id)

    assert set(merged.aliases()) == {"+15550001", "ann@example.com"}
    assert sorted(n.text for n in merged.notes) == ["likes tea", "met at conference"]
    assert merged.last_contacted == _ts(4)
    assert merged.last_channel == "email"
    assert registry.resolve("ann@example.com").id == keep.id
    assert registry.get(drop.id) is None


def test_merge_appends_source_notes_after_target_notes(registry):
    keep = registry.record_contact("+15550001", _ts(1))
    drop = registry.record_contact("ann@example.com", _ts(2))
    registry.add_note("ann@example.com", "source-old")
    registry.add_note("+15550001", "target-note")

    merged = registry.merge(keep.id, drop.id)

    assert [n.text for n in merged.notes] == ["target-note", "source-old"]
    assert [n.text for n in registry.get(keep.id).notes] == ["target-note", "source-old"]


def test_merge_fills_blank_profile_fields(registry):
    keep = registry.update_profile("+1555", company="Acme")
    drop = registry.update_profile("ann@x.y", display_name="Ann", company="Other", profession="CTO")
    merged = registry.merge(keep.id, drop.id)
    assert merged.display_name == "Ann"
    assert merged.company == "Acme"
    assert merged.profession == "CTO"


def test_merge_keeps_newer_target_timestamp(registry):
    keep = registry.record_contact("+1555", _ts(9), "imessage")
    drop = registry.record_contact("ann@x.y", _ts(2), "email")
    merged = registry.merge(keep.id, drop.id)
    assert merged.last_contacted == _ts(9)
    assert merged.last_channel == "imessage"


def test_merge_moves_suggestions(registry):
    keep = registry.record_contact("+1555", _ts(1))
    drop = registry.record_contact("ann@x.y", _ts(1))
    registry.stage_suggestion("ann@x.y", "company", "Acme")
    merged = registry.merge(keep.id, drop.id)
    assert [s.content for s in merged.pending_suggestions] == ["Acme"]


def test_merge_into_self_raises(registry):
    contact = registry.record_contact("+1555", _ts(1))
    with pytest.raises(ValueError):
        registry.merge(contact.id, contact.id)


def test_merge_unknown_raises_not_found(registry):
    contact = registry.record_contact("+1555", _ts(1))
    with pytest.raises(NotFound):
        registry.merge(contact.id, "contact-missing")
    with pytest.raises(NotFound):
        registry.merge("contact-missing", contact.id)
    assert registry.get(contact.id) is not None


# ------------------------------------------------------------------
# Notes
# ------------------------------------------------------------------

def test_note_lifecycle(registry):
    registry.record_contact("+1555", _ts(1))
    note = registry.add_note("+1555", "first draft")
    assert note.id.startswith("note-")

    updated = registry.update_note("+1555", note.id, "final")
    assert updated.text == "final"
    assert updated.timestamp == note.timestamp
    assert [n.text for n in registry.resolve("+1555").notes] == ["final"]

    registry.delete_note("+1555", note.id)
    assert registry.resolve("+1555").notes == []


def test_note_operations_raise_not_found(registry):
    registry.record_contact("+1555", _ts(1))
    with pytest.raises(NotFound):
        registry.add_note("nobody", "x")
    with pytest.raises(NotFound):
        registry.update_note("+1555", "note-missing", "x")
    with pytest.raises(NotFound):
        registry.delete_note("+1555", "note-missing")


def test_note_belongs_to_its_contact(registry):
    registry.record_contact("+1555", _ts(1))
    registry.record_contact("+1666", _ts(1))
    note = registry.add_note("+1555", "private")
    with pytest.raises(NotFound):
        registry.delete_note("+1666", note.id)


# ------------------------------------------------------------------
# Suggestions
# ------------------------------------------------------------------

def test_stage_suggestion_dedupes_pending(registry):
    registry.record_contact("+1555", _ts(1))
    first = registry.stage_suggestion("+1555", "company", "Acme")
    assert first is not None
    assert first.status == "pending"
    assert registry.stage_suggestion("+1555", "company", "Acme") is None
    assert len(registry.resolve("+1555").pending_suggestions) == 1


def test_stage_suggestion_unknown_contact(registry):
    with pytest.raises(NotFound):
        registry.stage_suggestion("nobody", "company", "Acme")


def test_declined_suggestion_is_not_restaged(registry):
    registry.record_contact("+1555", _ts(1))
    suggestion = registry.stage_suggestion("+1555", "company", "Acme")
    contact = registry.decline_suggestion("+1555", suggestion.id)
    assert contact.pending_suggestions == []
    assert contact.rejected_suggestions == ["Acme"]
    assert registry.stage_suggestion("+1555", "company", "Acme") is None


def test_accept_profile_suggestion(registry):
    registry.record_contact("+1555", _ts(1))
    suggestion = registry.stage_suggestion("+1555", "profession", "Architect")
    contact = registry.accept_suggestion("+1555", suggestion.id)
    assert contact.profession == "Architect"
    assert contact.pending_suggestions == []


@pytest.mark.parametrize("kind,content,kind_after", [
    ("emails", "ann@work.com", "email"),
    ("phones", "+15559999", "phone"),
    ("telegram", "@ann", "telegram"),
])
def test_accept_alias_suggestion(registry, kind, content, kind_after):
    registry.record_contact("+1555", _ts(1))
    suggestion = registry.stage_suggestion("+1555", kind, content)
    contact = registry.accept_suggestion("+1555", suggestion.id)
    assert content in contact.channels[kind_after]
    assert registry.resolve(content).id == contact.id


@pytest.mark.parametrize("kind", ["notes", "addresses", "hashtags"])
def test_accept_note_suggestion(registry, kind):
    registry.record_contact("+1555", _ts(1))
    suggestion = registry.stage_suggestion("+1555", kind, "Berlin")
    contact = registry.accept_suggestion("+1555", suggestion.id)
    assert [n.text for n in contact.notes] == ["Berlin"]


def test_accept_twice_raises_not_found(registry):
    registry.record_contact("+1555", _ts(1))
    suggestion = registry.stage_suggestion("+1555", "company", "Acme")
    registry.accept_suggestion("+1555", suggestion.id)
    with pytest.raises(NotFound):
        registry.accept_suggestion("+1555", suggestion.id)
    with pytest.raises(NotFound):
        registry.decline_suggestion("+1555", suggestion.id)


# ------------------------------------------------------------------
# Stats / degradation
# ------------------------------------------------------------------

def test_channel_stats(registry):
    registry.record_contact("+1555", _ts(1))
    registry.record_contact("+1666", _ts(1))
    registry.record_contact("ann@x.y", _ts(1))
    stats = registry.channel_stats()
    assert stats == {"total": 3, "by_channel": {"email": 1, "phone": 2}}


def test_channel_stats_empty(registry):
    assert registry.channel_stats() == {"total": 0, "by_channel": {}}


def test_reads_degrade_when_store_unavailable(database, monkeypatch):
    registry = IdentityRegistry(database)
    registry.record_contact("+1555", _ts(1))

    def _down(fn, timeout=None):
        raise StoreUnavailable("locked")

    monkeypatch.setattr(database, "read", _down)
    assert registry.resolve("+1555") is None
    assert registry.list_contacts() == []
