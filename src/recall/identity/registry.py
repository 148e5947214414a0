"""Identity registry: canonical contacts resolved from any channel handle.

Each contact owns a set of aliases per channel kind (``phone``, ``email``,
``linkedin`` …). Every mutation runs in one ``BEGIN IMMEDIATE`` transaction
that re-reads the current rows before changing them, so concurrent writers
(threads or processes) are serialised by SQLite and never act on stale state.
``last_contacted`` only moves forward: the update is a conditional UPDATE that
compares against the stored value inside the same statement.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections import defaultdict
from typing import Any

from recall.db.connection import Database
from recall.db.models import Contact, Note, Suggestion
from recall.errors import NotFound, StoreUnavailable
from recall.text import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

PROFILE_FIELDS: tuple[str, ...] = (
    "display_name",
    "profession",
    "relationship",
    "company",
    "linkedin_url",
)

# Suggestion types applied as a note rather than a profile field or alias.
_NOTE_SUGGESTIONS = frozenset(["notes", "addresses", "hashtags"])
# Suggestion types applied as an alias under a different channel kind.
_ALIAS_SUGGESTIONS = {"emails": "email", "phones": "phone"}

_CONTACT_COLUMNS = (
    "id, handle, display_name, profession, relationship, company, linkedin_url, "
    "last_contacted, last_channel"
)


def classify_handle(handle: str) -> str:
    """Channel kind for a bare handle: ``email`` if it contains ``@``, else ``phone``."""
    return "email" if "@" in handle else "phone"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class IdentityRegistry:
    """Resolve, create, merge and annotate canonical contacts.

    Args:
        db: Database handle (schema is created on construction).
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        db.ensure_schema()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, identifier: str) -> Contact | None:
        """Case-insensitive exact match on handle, any alias, or display name."""
        if not identifier or not identifier.strip():
            return None

        def _read(conn: sqlite3.Connection) -> Contact | None:
            contact_id = _resolve_id(conn, identifier)
            return _load(conn, contact_id) if contact_id else None

        return self._read(_read, None)

    def get(self, contact_id: str) -> Contact | None:
        return self._read(lambda conn: _load(conn, contact_id), None)

    def list_contacts(self) -> list[Contact]:
        """All contacts, most recently contacted first."""
        return self._read(_load_all, [])

    def all_handles(self, identifier: str) -> list[str]:
        """The handle plus every alias of the contact *identifier* resolves to.

        Unknown identifiers return ``[identifier]`` so callers can still query
        history under the raw handle.
        """
        contact = self.resolve(identifier)
        if contact is None:
            return [identifier]
        handles = [contact.handle]
        for alias in contact.aliases():
            if alias not in handles:
                handles.append(alias)
        return handles

    def channel_stats(self) -> dict[str, Any]:
        """Contact totals per channel kind.

        Contacts without any alias are counted as ``address_book``.
        """
        contacts = self.list_contacts()
        by_channel: dict[str, int] = defaultdict(int)
        for contact in contacts:
            kinds = [kind for kind, values in contact.channels.items() if values]
            if not kinds:
                by_channel["address_book"] += 1
            for kind in kinds:
                by_channel[kind] += 1
        return {"total": len(contacts), "by_channel": dict(sorted(by_channel.items()))}

    # ------------------------------------------------------------------
    # Contact writes
    # ------------------------------------------------------------------

    def record_contact(self, handle: str, timestamp: Any, channel: str = "") -> Contact:
        """Create the contact for *handle* if needed and advance its last-contacted time.

        ``last_contacted``/``last_channel`` change only when *timestamp* is
        strictly newer than the stored value, however calls interleave.

        Raises:
            ValueError: If *handle* is blank or *timestamp* cannot be parsed.
        """
        handle = (handle or "").strip()
        if not handle:
            raise ValueError("handle must not be empty")
        ts = parse_timestamp(timestamp)
        if ts is None:
            raise ValueError(f"Unparsable timestamp: {timestamp!r}")

        def _write(conn: sqlite3.Connection) -> Contact:
            contact_id = _resolve_id(conn, handle, include_display_name=False)
            if contact_id is None:
                contact_id = _insert_contact(conn, handle, last_contacted=ts, last_channel=channel)
                logger.info("created contact %s for %s", contact_id, handle)
            else:
                conn.execute(
                    """
                    UPDATE contacts
                    SET last_contacted = ?,
                        last_channel = CASE WHEN ? <> '' THEN ? ELSE last_channel END
                    WHERE id = ? AND (last_contacted IS NULL OR last_contacted < ?)
                    """,
                    (ts, channel, channel, contact_id, ts),
                )
            return _load(conn, contact_id)

        return self._db.write(_write)

    def update_profile(self, handle: str, **fields: str) -> Contact:
        """Set profile fields on the contact for *handle*, creating it if unknown.

        Raises:
            ValueError: If a field name is not a profile field.
        """
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        def _write(conn: sqlite3.Connection) -> Contact:
            contact_id = _resolve_id(conn, handle, include_display_name=False)
            if contact_id is None:
                contact_id = _insert_contact(conn, handle.strip())
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                conn.execute(
                    f"UPDATE contacts SET {assignments} WHERE id = ?",  # noqa: S608
                    (*[str(v or "") for v in fields.values()], contact_id),
                )
            return _load(conn, contact_id)

        return self._db.write(_write)

    def merge(self, target_id: str, source_id: str) -> Contact:
        """Fold *source_id* into *target_id* and delete the source, atomically.

        The target gains every source alias (and the source handle as an
        alias), every source note whose text it does not already have, the
        source's suggestions, any profile field it has empty, and the later of
        the two last-contacted times.

        Raises:
            ValueError: If both ids are the same.
            NotFound: If either contact does not exist.
        """
        if target_id == source_id:
            raise ValueError("Cannot merge a contact into itself.")

        def _write(conn: sqlite3.Connection) -> Contact:
            target = _load(conn, target_id)
            source = _load(conn, source_id)
            if target is None:
                raise NotFound(f"Contact '{target_id}' not found.")
            if source is None:
                raise NotFound(f"Contact '{source_id}' not found.")

            conn.execute(
                """
                INSERT OR IGNORE INTO contact_channels (contact_id, kind, value)
                SELECT ?, kind, value FROM contact_channels WHERE contact_id = ?
                """,
                (target_id, source_id),
            )
            if source.handle.lower() != target.handle.lower():
                conn.execute(
                    "INSERT OR IGNORE INTO contact_channels (contact_id, kind, value) "
                    "VALUES (?, ?, ?)",
                    (target_id, classify_handle(source.handle), source.handle),
                )

            existing_notes = {n.text for n in target.notes}
            for note in source.notes:
                if note.text in existing_notes:
                    continue
                existing_notes.add(note.text)
                # Re-insert so the note takes a fresh seq after the target's own notes.
                conn.execute("DELETE FROM contact_notes WHERE id = ?", (note.id,))
                conn.execute(
                    "INSERT INTO contact_notes (id, contact_id, text, timestamp) VALUES (?, ?, ?, ?)",
                    (note.id, target_id, note.text, note.timestamp),
                )

            conn.execute(
                """
                UPDATE contact_suggestions SET contact_id = ?
                WHERE contact_id = ? AND content NOT IN (
                    SELECT content FROM contact_suggestions
                    WHERE contact_id = ? AND status IN ('pending', 'rejected')
                )
                """,
                (target_id, source_id, target_id),
            )

            fills = {
                name: getattr(source, name)
                for name in PROFILE_FIELDS
                if _is_blank_field(target, name) and not _is_blank_field(source, name)
            }
            if fills:
                assignments = ", ".join(f"{name} = ?" for name in fills)
                conn.execute(
                    f"UPDATE contacts SET {assignments} WHERE id = ?",  # noqa: S608
                    (*fills.values(), target_id),
                )
            if source.last_contacted and (
                not target.last_contacted or source.last_contacted > target.last_contacted
            ):
                conn.execute(
                    "UPDATE contacts SET last_contacted = ?, last_channel = ? WHERE id = ?",
                    (source.last_contacted, source.last_channel, target_id),
                )

            conn.execute("DELETE FROM contacts WHERE id = ?", (source_id,))
            logger.info("merged contact %s into %s", source_id, target_id)
            return _load(conn, target_id)

        return self._db.write(_write)

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    def add_note(self, identifier: str, text: str) -> Note:
        """Append a note to the contact *identifier* resolves to.

        Raises:
            NotFound: If no contact resolves.
        """

        def _write(conn: sqlite3.Connection) -> Note:
            contact_id = _require_contact(conn, identifier)
            note = Note(id=_new_id("note"), text=text, timestamp=utc_now())
            conn.execute(
                "INSERT INTO contact_notes (id, contact_id, text, timestamp) VALUES (?, ?, ?, ?)",
                (note.id, contact_id, note.text, note.timestamp),
            )
            return note

        return self._db.write(_write)

    def update_note(self, identifier: str, note_id: str, text: str) -> Note:
        """Replace the text of one note.

        Raises:
            NotFound: If the contact or the note (on that contact) is unknown.
        """

        def _write(conn: sqlite3.Connection) -> Note:
            contact_id = _require_contact(conn, identifier)
            row = conn.execute(
                "SELECT timestamp FROM contact_notes WHERE id = ? AND contact_id = ?",
                (note_id, contact_id),
            ).fetchone()
            if row is None:
                raise NotFound(f"Note '{note_id}' not found.")
            conn.execute("UPDATE contact_notes SET text = ? WHERE id = ?", (text, note_id))
            return Note(id=note_id, text=text, timestamp=row["timestamp"])

        return self._db.write(_write)

    def delete_note(self, identifier: str, note_id: str) -> None:
        """Remove one note.

        Raises:
            NotFound: If the contact or the note (on that contact) is unknown.
        """

        def _write(conn: sqlite3.Connection) -> None:
            contact_id = _require_contact(conn, identifier)
            cur = conn.execute(
                "DELETE FROM contact_notes WHERE id = ? AND contact_id = ?", (note_id, contact_id)
            )
            if cur.rowcount == 0:
                raise NotFound(f"Note '{note_id}' not found.")

        self._db.write(_write)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def stage_suggestion(self, handle: str, type: str, content: str) -> Suggestion | None:
        """Stage a profile suggestion for review.

        Returns None (and stages nothing) when the same content is already
        pending or was declined before for this contact.

        Raises:
            NotFound: If no contact resolves from *handle*.
        """

        def _write(conn: sqlite3.Connection) -> Suggestion | None:
            contact_id = _require_contact(conn, handle)
            seen = conn.execute(
                """
                SELECT 1 FROM contact_suggestions
                WHERE contact_id = ? AND content = ? AND status IN ('pending', 'rejected')
                LIMIT 1
                """,
                (contact_id, content),
            ).fetchone()
            if seen is not None:
                return None
            suggestion = Suggestion(
                id=_new_id("sugg"),
                contact_id=contact_id,
                type=type,
                content=content,
                timestamp=utc_now(),
            )
            conn.execute(
                """
                INSERT INTO contact_suggestions (id, contact_id, type, content, timestamp, status)
                VALUES (?, ?, ?, ?, ?, 'pending')
                """,
                (suggestion.id, contact_id, type, content, suggestion.timestamp),
            )
            return suggestion

        return self._db.write(_write)

    def accept_suggestion(self, identifier: str, suggestion_id: str) -> Contact:
        """Apply a pending suggestion to the contact and mark it accepted.

        Profile-field types overwrite that field, note-like types append a
        note, and every other type becomes an alias.

        Raises:
            NotFound: If the contact or a pending suggestion with that id is unknown.
        """

        def _write(conn: sqlite3.Connection) -> Contact:
            contact_id = _require_contact(conn, identifier)
            suggestion = _pending_suggestion(conn, contact_id, suggestion_id)
            _apply_suggestion(conn, contact_id, suggestion)
            conn.execute(
                "UPDATE contact_suggestions SET status = 'accepted' WHERE id = ?", (suggestion_id,)
            )
            return _load(conn, contact_id)

        return self._db.write(_write)

    def decline_suggestion(self, identifier: str, suggestion_id: str) -> Contact:
        """Mark a pending suggestion rejected; its content is never staged again.

        Raises:
            NotFound: If the contact or a pending suggestion with that id is unknown.
        """

        def _write(conn: sqlite3.Connection) -> Contact:
            contact_id = _require_contact(conn, identifier)
            _pending_suggestion(conn, contact_id, suggestion_id)
            conn.execute(
                "UPDATE contact_suggestions SET status = 'rejected' WHERE id = ?", (suggestion_id,)
            )
            return _load(conn, contact_id)

        return self._db.write(_write)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _read(self, fn, default):
        try:
            return self._db.read(fn)
        except StoreUnavailable as exc:
            logger.warning("identity registry unavailable: %s", exc)
            return default


# ------------------------------------------------------------------
# SQL helpers (run inside a caller-owned connection/transaction)
# ------------------------------------------------------------------


def _resolve_id(
    conn: sqlite3.Connection, identifier: str, *, include_display_name: bool = True
) -> str | None:
    """Contact id for *identifier*; handle matches win over aliases over display names.

    Writers keyed by a channel handle pass ``include_display_name=False`` so a
    new handle never lands on a contact that merely shares its display name.
    """
    query = identifier.strip()
    row = conn.execute(
        """
        SELECT c.id,
               CASE
                   WHEN c.handle = :q COLLATE NOCASE THEN 0
                   WHEN EXISTS (
                       SELECT 1 FROM contact_channels ch
                       WHERE ch.contact_id = c.id AND ch.value = :q COLLATE NOCASE
                   ) THEN 1
                   ELSE 2
               END AS match_rank
        FROM contacts c
        WHERE c.handle = :q COLLATE NOCASE
           OR (:by_name AND c.display_name = :q COLLATE NOCASE)
           OR EXISTS (
               SELECT 1 FROM contact_channels ch
               WHERE ch.contact_id = c.id AND ch.value = :q COLLATE NOCASE
           )
        ORDER BY match_rank, c.rowid
        LIMIT 1
        """,
        {"q": query, "by_name": int(include_display_name)},
    ).fetchone()
    return row["id"] if row else None


def _require_contact(conn: sqlite3.Connection, identifier: str) -> str:
    contact_id = _resolve_id(conn, identifier) if identifier and identifier.strip() else None
    if contact_id is None:
        raise NotFound(f"Contact '{identifier}' not found.")
    return contact_id


def _insert_contact(
    conn: sqlite3.Connection,
    handle: str,
    *,
    last_contacted: str | None = None,
    last_channel: str = "",
) -> str:
    contact_id = _new_id("contact")
    conn.execute(
        """
        INSERT INTO contacts (id, handle, display_name, last_contacted, last_channel)
        VALUES (?, ?, ?, ?, ?)
        """,
        (contact_id, handle, handle, last_contacted, last_channel or ""),
    )
    conn.execute(
        "INSERT OR IGNORE INTO contact_channels (contact_id, kind, value) VALUES (?, ?, ?)",
        (contact_id, classify_handle(handle), handle),
    )
    return contact_id


def _pending_suggestion(
    conn: sqlite3.Connection, contact_id: str, suggestion_id: str
) -> Suggestion:
    row = conn.execute(
        """
        SELECT id, contact_id, type, content, timestamp, status FROM contact_suggestions
        WHERE id = ? AND contact_id = ? AND status = 'pending'
        """,
        (suggestion_id, contact_id),
    ).fetchone()
    if row is None:
        raise NotFound(f"Pending suggestion '{suggestion_id}' not found.")
    return Suggestion(**dict(row))


def _apply_suggestion(conn: sqlite3.Connection, contact_id: str, suggestion: Suggestion) -> None:
    kind = suggestion.type
    if kind in PROFILE_FIELDS:
        conn.execute(
            f"UPDATE contacts SET {kind} = ? WHERE id = ?",  # noqa: S608
            (suggestion.content, contact_id),
        )
    elif kind in _NOTE_SUGGESTIONS:
        conn.execute(
            "INSERT INTO contact_notes (id, contact_id, text, timestamp) VALUES (?, ?, ?, ?)",
            (_new_id("note"), contact_id, suggestion.content, utc_now()),
        )
    else:
        conn.execute(
            "INSERT OR IGNORE INTO contact_channels (contact_id, kind, value) VALUES (?, ?, ?)",
            (contact_id, _ALIAS_SUGGESTIONS.get(kind, kind), suggestion.content),
        )


def _is_blank_field(contact: Contact, name: str) -> bool:
    value = getattr(contact, name) or ""
    # A display name equal to the handle was filled in automatically.
    return not value.strip() or (name == "display_name" and value == contact.handle)


def _load(conn: sqlite3.Connection, contact_id: str) -> Contact | None:
    row = conn.execute(
        f"SELECT {_CONTACT_COLUMNS} FROM contacts WHERE id = ?", (contact_id,)
    ).fetchone()
    if row is None:
        return None
    return _hydrate(conn, [row])[0]


def _load_all(conn: sqlite3.Connection) -> list[Contact]:
    rows = conn.execute(
        f"SELECT {_CONTACT_COLUMNS} FROM contacts "
        "ORDER BY last_contacted IS NULL, last_contacted DESC, rowid"
    ).fetchall()
    return _hydrate(conn, rows)


def _hydrate(conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Contact]:
    """Build Contact objects for *rows* with three bulk queries for their children."""
    if not rows:
        return []
    ids = [r["id"] for r in rows]
    placeholders = ",".join("?" * len(ids))

    channels: dict[str, dict[str, list[str]]] = defaultdict(lambda: defaultdict(list))
    for r in conn.execute(
        f"SELECT contact_id, kind, value FROM contact_channels "  # noqa: S608
        f"WHERE contact_id IN ({placeholders}) ORDER BY kind, value",
        ids,
    ):
        channels[r["contact_id"]][r["kind"]].append(r["value"])

    notes: dict[str, list[Note]] = defaultdict(list)
    for r in conn.execute(
        f"SELECT contact_id, id, text, timestamp FROM contact_notes "  # noqa: S608
        f"WHERE contact_id IN ({placeholders}) ORDER BY seq",
        ids,
    ):
        notes[r["contact_id"]].append(Note(id=r["id"], text=r["text"], timestamp=r["timestamp"]))

    pending: dict[str, list[Suggestion]] = defaultdict(list)
    rejected: dict[str, list[str]] = defaultdict(list)
    for r in conn.execute(
        f"SELECT id, contact_id, type, content, timestamp, status FROM contact_suggestions "  # noqa: S608
        f"WHERE contact_id IN ({placeholders}) AND status IN ('pending', 'rejected') ORDER BY seq",
        ids,
    ):
        if r["status"] == "pending":
            pending[r["contact_id"]].append(Suggestion(**dict(r)))
        else:
            rejected[r["contact_id"]].append(r["content"])

    return [
        Contact(
            id=r["id"],
            handle=r["handle"],
            display_name=r["display_name"],
            profession=r["profession"],
            relationship=r["relationship"],
            company=r["company"],
            linkedin_url=r["linkedin_url"],
            last_contacted=r["last_contacted"],
            last_channel=r["last_channel"],
            channels={k: list(v) for k, v in channels[r["id"]].items()},
            notes=notes[r["id"]],
            pending_suggestions=pending[r["id"]],
            rejected_suggestions=rejected[r["id"]],
        )
        for r in rows
    ]
