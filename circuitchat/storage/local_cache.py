"""
Local message cache.

A durable key/value store holding one JSON array of messages per
conversation under the key `conversation_{id}`. It is the fallback the
manager reads when the API cannot supply a conversation's history.
Local pin flags live beside it in a `pins` table, since the API has no
pin endpoint. Single SQLite file; no eviction.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from circuitchat.storage.models import Message

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pins (
    conversation_id TEXT PRIMARY KEY,
    pinned INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def cache_key(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


class LocalCache:
    """SQLite-backed per-conversation message cache."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("Local cache initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _read(self, conn, key: str) -> list[dict]:
        row = conn.execute(
            "SELECT value FROM cache_entries WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return []
        try:
            data = json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable cache entry %s", key)
            return []
        return data if isinstance(data, list) else []

    def _write(self, conn, key: str, records: list[dict]):
        conn.execute(
            "INSERT OR REPLACE INTO cache_entries (key, value, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(records, ensure_ascii=False),
             datetime.now(timezone.utc).isoformat()),
        )

    def get_messages(self, conversation_id: str) -> list[Message]:
        """All cached messages for a conversation, in stored order. Empty if none."""
        with self._connect() as conn:
            records = self._read(conn, cache_key(conversation_id))
        messages = []
        for record in records:
            try:
                messages.append(Message.from_dict(record))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping malformed cached message in %s: %s", conversation_id, e)
        return messages

    def store_message(self, conversation_id: str, message: Message):
        """
        Append a message, or replace the cached message with the same id
        in place. Order of first appearance is kept.
        """
        key = cache_key(conversation_id)
        record = message.to_dict()
        with self._connect() as conn:
            records = self._read(conn, key)
            for i, existing in enumerate(records):
                if existing.get("id") == message.id:
                    records[i] = record
                    break
            else:
                records.append(record)
            self._write(conn, key, records)
        logger.debug(
            "Cached message %s (role=%s, status=%s, conv=%s)",
            message.id, message.role.value, message.status.value, conversation_id,
        )

    def replace_messages(self, conversation_id: str, messages: list[Message]):
        """Overwrite a conversation's cache entry with an authoritative list."""
        with self._connect() as conn:
            self._write(conn, cache_key(conversation_id), [m.to_dict() for m in messages])

    def clear(self, conversation_id: str):
        """Invalidate a conversation's cache entry."""
        with self._connect() as conn:
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (cache_key(conversation_id),))

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------

    def get_pins(self) -> dict[str, bool]:
        """Locally recorded pin flags, by conversation id."""
        with self._connect() as conn:
            rows = conn.execute("SELECT conversation_id, pinned FROM pins").fetchall()
        return {r["conversation_id"]: bool(r["pinned"]) for r in rows}

    def set_pin(self, conversation_id: str, pinned: bool):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO pins (conversation_id, pinned, updated_at) VALUES (?, ?, ?)",
                (conversation_id, int(pinned), datetime.now(timezone.utc).isoformat()),
            )
        logger.debug("Pin for %s set to %s", conversation_id, pinned)

    def clear_pin(self, conversation_id: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM pins WHERE conversation_id = ?", (conversation_id,))
