"""SQLite data access layer for chats, message logs, stream pointers and interrupt signals.

Every function here is a single atomic operation against the store. The agent
loop and the HTTP handlers share these rows concurrently, so compound updates
(append with position assignment, compare-and-clear on the stream pointer)
run inside one ``transaction()``.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from ..db import ThreadSafeConnection

logger = logging.getLogger(__name__)


class ChatNotFoundError(LookupError):
    """Raised when an operation needs a chat record that does not exist."""

    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat not found: {chat_id}")
        self.chat_id = chat_id


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _uuid() -> str:
    return str(uuid.uuid4())


# --- Chats ---


def create_chat(db: ThreadSafeConnection, chat_id: str, run_id: str, model: str | None = None) -> dict[str, Any]:
    now = _now()
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO chats (id, run_id, model, stream_id, created_at, updated_at) VALUES (?, ?, ?, NULL, ?, ?)",
            (chat_id, run_id, model, now, now),
        )
    return {
        "id": chat_id,
        "run_id": run_id,
        "model": model,
        "stream_id": None,
        "created_at": now,
        "updated_at": now,
    }


def get_chat(db: ThreadSafeConnection, chat_id: str) -> dict[str, Any] | None:
    row = db.execute_fetchone("SELECT * FROM chats WHERE id = ?", (chat_id,))
    if not row:
        return None
    return dict(row)


def require_chat(db: ThreadSafeConnection, chat_id: str) -> dict[str, Any]:
    chat = get_chat(db, chat_id)
    if chat is None:
        raise ChatNotFoundError(chat_id)
    return chat


def set_run_id(db: ThreadSafeConnection, chat_id: str, run_id: str) -> None:
    with db.transaction() as conn:
        conn.execute("UPDATE chats SET run_id = ?, updated_at = ? WHERE id = ?", (run_id, _now(), chat_id))


# --- Stream pointer ---


def set_stream_id(db: ThreadSafeConnection, chat_id: str, stream_id: str) -> None:
    with db.transaction() as conn:
        conn.execute(
            "UPDATE chats SET stream_id = ?, updated_at = ? WHERE id = ?",
            (stream_id, _now(), chat_id),
        )


def get_stream_id(db: ThreadSafeConnection, chat_id: str) -> str | None:
    row = db.execute_fetchone("SELECT stream_id FROM chats WHERE id = ?", (chat_id,))
    if not row:
        return None
    return row["stream_id"]


def clear_stream_id_if(db: ThreadSafeConnection, chat_id: str, stream_id: str) -> bool:
    """Clear the stream pointer only if it still names ``stream_id``.

    Returns True if the pointer was cleared. A newer event that has already
    replaced the pointer keeps it.
    """
    with db.transaction() as conn:
        cursor = conn.execute(
            "UPDATE chats SET stream_id = NULL, updated_at = ? WHERE id = ? AND stream_id = ?",
            (_now(), chat_id, stream_id),
        )
        cleared = cursor.rowcount > 0
    if not cleared:
        logger.debug("Stream pointer for chat %s no longer %s; left as is", chat_id, stream_id)
    return cleared


# --- Messages ---


def _row_to_message(row: Any) -> dict[str, Any]:
    return {
        "id": row["id"],
        "role": row["role"],
        "parts": json.loads(row["parts_json"]),
        "position": row["position"],
    }


def push_messages(db: ThreadSafeConnection, chat_id: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Append messages to the chat's log, returning them with assigned positions."""
    if not messages:
        return []
    now = _now()
    stored: list[dict[str, Any]] = []
    with db.transaction() as conn:
        pos_row = conn.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM messages WHERE chat_id = ?",
            (chat_id,),
        ).fetchone()
        position = pos_row[0]
        for message in messages:
            mid = message.get("id") or _uuid()
            parts = message.get("parts", [])
            conn.execute(
                "INSERT INTO messages (id, chat_id, role, parts_json, position, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (mid, chat_id, message["role"], json.dumps(parts), position, now),
            )
            stored.append({"id": mid, "role": message["role"], "parts": parts, "position": position})
            position += 1
        conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (now, chat_id))
    return stored


def list_messages(db: ThreadSafeConnection, chat_id: str) -> list[dict[str, Any]]:
    rows = db.execute_fetchall(
        "SELECT * FROM messages WHERE chat_id = ? ORDER BY position",
        (chat_id,),
    )
    return [_row_to_message(row) for row in rows]


def count_messages(db: ThreadSafeConnection, chat_id: str) -> int:
    row = db.execute_fetchone("SELECT COUNT(*) FROM messages WHERE chat_id = ?", (chat_id,))
    return row[0] if row else 0


def append_part_to_last_assistant(
    db: ThreadSafeConnection,
    chat_id: str,
    part: dict[str, Any],
    fallback_id: str,
) -> dict[str, Any]:
    """Append ``part`` to the log's final message if it is an assistant message.

    Otherwise a new assistant message with id ``fallback_id`` holding just the
    part is pushed. Returns the updated or created message.
    """
    now = _now()
    with db.transaction() as conn:
        row = conn.execute(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY position DESC LIMIT 1",
            (chat_id,),
        ).fetchone()
        if row is not None and row["role"] == "assistant":
            message = _row_to_message(row)
            message["parts"].append(part)
            conn.execute(
                "UPDATE messages SET parts_json = ? WHERE chat_id = ? AND position = ?",
                (json.dumps(message["parts"]), chat_id, message["position"]),
            )
        else:
            position = row["position"] + 1 if row is not None else 0
            message = {"id": fallback_id, "role": "assistant", "parts": [part], "position": position}
            conn.execute(
                "INSERT INTO messages (id, chat_id, role, parts_json, position, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (fallback_id, chat_id, "assistant", json.dumps([part]), position, now),
            )
        conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (now, chat_id))
    return message


# --- Interrupt signals ---


def set_interrupt(db: ThreadSafeConnection, chat_id: str, timestamp: int) -> None:
    """Record a cancellation request; a later write overwrites an earlier one."""
    with db.transaction() as conn:
        conn.execute(
            "INSERT INTO interrupts (chat_id, timestamp) VALUES (?, ?) "
            "ON CONFLICT(chat_id) DO UPDATE SET timestamp = excluded.timestamp",
            (chat_id, timestamp),
        )


def get_interrupt(db: ThreadSafeConnection, chat_id: str) -> int | None:
    row = db.execute_fetchone("SELECT timestamp FROM interrupts WHERE chat_id = ?", (chat_id,))
    if not row:
        return None
    return row["timestamp"]


def has_interrupt_since(db: ThreadSafeConnection, chat_id: str, since: int) -> bool:
    timestamp = get_interrupt(db, chat_id)
    return timestamp is not None and timestamp >= since
