"""SQLite storage for segmented conversation states."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .models import ChatMessage, ConversationSegment, ConversationState, now_millis


class ConversationStore:
    """SQLite-backed storage for conversation states and their full message log.

    ``segments``/``messages`` hold the current state (summaries plus the raw
    turns of the open segment). ``message_log`` is append-only and keeps every
    message ever recorded, for "no compression" token estimates.
    """

    def __init__(self, db_path: Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                open_segment_id TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS segments (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                summary TEXT,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_segments_conv
                ON segments(conversation_id, position);

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                segment_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                FOREIGN KEY (segment_id) REFERENCES segments(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_segment
                ON messages(segment_id, position);

            CREATE TABLE IF NOT EXISTS message_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_message_log_conv
                ON message_log(conversation_id);
        """)
        self.conn.commit()

    def save_state(self, state: ConversationState, new_messages: list[ChatMessage] | None = None):
        """Replace the stored state and append ``new_messages`` to the log, atomically."""
        now = now_millis()
        with self.conn:
            self.conn.execute(
                """INSERT INTO conversations (id, created_at, updated_at, open_segment_id)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       updated_at = excluded.updated_at,
                       open_segment_id = excluded.open_segment_id""",
                (state.conversation_id, now, now, state.open_segment_id),
            )
            self.conn.execute(
                "DELETE FROM segments WHERE conversation_id = ?", (state.conversation_id,)
            )

            for pos, seg in enumerate(state.segments):
                self.conn.execute(
                    "INSERT INTO segments (id, conversation_id, position, summary) VALUES (?, ?, ?, ?)",
                    (seg.id, state.conversation_id, pos, seg.summary),
                )
                self.conn.executemany(
                    """INSERT INTO messages (segment_id, position, role, content, timestamp)
                       VALUES (?, ?, ?, ?, ?)""",
                    [(seg.id, i, m.role, m.content, m.timestamp) for i, m in enumerate(seg.messages)],
                )

            self.conn.executemany(
                """INSERT INTO message_log (conversation_id, role, content, timestamp)
                   VALUES (?, ?, ?, ?)""",
                [(state.conversation_id, m.role, m.content, m.timestamp) for m in new_messages or []],
            )

    def load_state(self, conversation_id: str) -> ConversationState | None:
        row = self.conn.execute(
            "SELECT open_segment_id FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if not row:
            return None

        seg_rows = self.conn.execute(
            "SELECT id, summary FROM segments WHERE conversation_id = ? ORDER BY position",
            (conversation_id,),
        ).fetchall()

        segments = []
        for seg in seg_rows:
            msgs = self.conn.execute(
                "SELECT role, content, timestamp FROM messages WHERE segment_id = ? ORDER BY position",
                (seg["id"],),
            ).fetchall()
            segments.append(
                ConversationSegment(
                    id=seg["id"],
                    summary=seg["summary"],
                    messages=[ChatMessage(**dict(m)) for m in msgs],
                )
            )

        return ConversationState(
            conversation_id=conversation_id,
            segments=segments,
            open_segment_id=row["open_segment_id"],
        )

    def get_history(self, conversation_id: str) -> list[ChatMessage]:
        """Every message ever recorded for the conversation, oldest first."""
        rows = self.conn.execute(
            "SELECT role, content, timestamp FROM message_log WHERE conversation_id = ? ORDER BY id",
            (conversation_id,),
        ).fetchall()
        return [ChatMessage(**dict(r)) for r in rows]

    def list_conversations(self, limit: int = 20, offset: int = 0) -> list[dict]:
        rows = self.conn.execute(
            """SELECT c.id, c.created_at, c.updated_at,
                      (SELECT COUNT(*) FROM segments s
                        WHERE s.conversation_id = c.id AND s.summary IS NOT NULL) AS summaries,
                      (SELECT COUNT(*) FROM message_log l
                        WHERE l.conversation_id = c.id) AS message_count
               FROM conversations c
               ORDER BY c.updated_at DESC
               LIMIT ? OFFSET ?""",
            (limit, offset),
        ).fetchall()
        return [dict(r) for r in rows]

    def delete_conversation(self, conversation_id: str) -> bool:
        with self.conn:
            cur = self.conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        return cur.rowcount > 0

    def get_stats(self) -> dict:
        """Get overall database statistics."""
        conv_count = self.conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
        msg_count = self.conn.execute("SELECT COUNT(*) FROM message_log").fetchone()[0]
        summary_count = self.conn.execute(
            "SELECT COUNT(*) FROM segments WHERE summary IS NOT NULL"
        ).fetchone()[0]

        date_range = self.conn.execute(
            "SELECT MIN(created_at), MAX(updated_at) FROM conversations"
        ).fetchone()

        return {
            "total_conversations": conv_count,
            "total_messages": msg_count,
            "total_summaries": summary_count,
            "date_range_start": format_ts(date_range[0]),
            "date_range_end": format_ts(date_range[1]),
            "avg_messages_per_conversation": round(msg_count / conv_count, 1) if conv_count else 0,
        }

    def close(self):
        self.conn.close()


def format_ts(ts_millis: int | None) -> str | None:
    if ts_millis is None:
        return None
    return datetime.fromtimestamp(ts_millis / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
