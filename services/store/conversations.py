from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from services.scene.normalizer import restore_snapshot
from services.scene.objects import SceneObject, snapshot_to_payload

logger = logging.getLogger("scenechat.store")

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DB_PATH_ENV = "SCENECHAT_DB_PATH"
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "conversations.db"
VALID_ROLES = {"user", "assistant"}


@dataclass
class ConversationNotFound(LookupError):
    conversation_id: str

    def __str__(self) -> str:
        return f"conversation '{self.conversation_id}' was not found"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _scene_json(scene: Sequence[SceneObject] | None) -> str | None:
    if not scene:
        return None
    return json.dumps(snapshot_to_payload(list(scene)))


def _scene_from_json(raw: str | None) -> tuple[SceneObject, ...]:
    if not raw:
        return ()
    try:
        return restore_snapshot(json.loads(raw))
    except json.JSONDecodeError:
        logger.warning("Stored scene data is not valid JSON, ignoring")
        return ()


class ConversationStore:
    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or os.getenv(DB_PATH_ENV, str(DEFAULT_DB_PATH))
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    conversation_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    scene_json TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    scene_json TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages (conversation_id, created_at)"
            )

    def create_conversation(self, title: str) -> str:
        conversation_id = str(uuid.uuid4())
        now = _now()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO conversations (conversation_id, title, scene_json, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                """,
                (conversation_id, title.strip() or "Untitled conversation", now, now),
            )
        return conversation_id

    def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            return None
        return self._conversation_row(row)

    def list_conversations(self) -> list[dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM conversations ORDER BY created_at DESC").fetchall()
        return [self._conversation_row(row) for row in rows]

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._conn() as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            deleted = conn.execute(
                "DELETE FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).rowcount
        return deleted > 0

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        scene: Sequence[SceneObject] | None = None,
    ) -> str:
        if role not in VALID_ROLES:
            raise ValueError(f"unsupported message role: {role}")
        if self.get_conversation(conversation_id) is None:
            raise ConversationNotFound(conversation_id)
        message_id = str(uuid.uuid4())
        scene_json = _scene_json(scene)
        now = _now()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO messages (message_id, conversation_id, role, content, scene_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message_id, conversation_id, role, content, scene_json, now),
            )
            if role == "assistant" and scene_json:
                conn.execute(
                    "UPDATE conversations SET scene_json = ?, updated_at = ? WHERE conversation_id = ?",
                    (scene_json, now, conversation_id),
                )
            else:
                conn.execute(
                    "UPDATE conversations SET updated_at = ? WHERE conversation_id = ?",
                    (now, conversation_id),
                )
        return message_id

    def list_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [
            {
                "message_id": row["message_id"],
                "conversation_id": row["conversation_id"],
                "role": row["role"],
                "content": row["content"],
                "scene": snapshot_to_payload(_scene_from_json(row["scene_json"])),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def update_conversation_scene(self, conversation_id: str, scene: Sequence[SceneObject]) -> None:
        with self._conn() as conn:
            updated = conn.execute(
                "UPDATE conversations SET scene_json = ?, updated_at = ? WHERE conversation_id = ?",
                (_scene_json(scene), _now(), conversation_id),
            ).rowcount
        if updated == 0:
            raise ConversationNotFound(conversation_id)

    def latest_scene(self, conversation_id: str) -> tuple[SceneObject, ...]:
        """Scene to restore when a conversation is reopened."""
        with self._conn() as conn:
            row = conn.execute(
                "SELECT scene_json FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            if row is None:
                raise ConversationNotFound(conversation_id)
            scene = _scene_from_json(row["scene_json"])
            if scene:
                return scene
            last = conn.execute(
                """
                SELECT scene_json FROM messages
                WHERE conversation_id = ? AND role = 'assistant' AND scene_json IS NOT NULL
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (conversation_id,),
            ).fetchone()
        return _scene_from_json(last["scene_json"]) if last is not None else ()

    @staticmethod
    def _conversation_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "conversation_id": row["conversation_id"],
            "title": row["title"],
            "scene": snapshot_to_payload(_scene_from_json(row["scene_json"])),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }


__all__ = ["ConversationNotFound", "ConversationStore"]
