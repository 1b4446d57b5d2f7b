"""Conversations that collect the output of scheduled task runs."""

from __future__ import annotations

import json
import random
import sqlite3
import string
import time
from typing import Any

from pydantic import BaseModel

from chatsched.scheduling.recurrence import iso_utc, utc_now


class ConversationMessage(BaseModel):
    role: str
    content: str
    metadata: dict[str, Any] | None = None
    created_at: str


class ConversationRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def create_conversation(self, owner_id: str, title: str) -> str:
        rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
        conversation_id = f"conv-{int(time.time())}-{rand}"
        self._db.execute(
            "INSERT INTO conversations (id, owner_id, title, created_at) VALUES (?, ?, ?, ?)",
            (conversation_id, owner_id, title, iso_utc(utc_now())),
        )
        self._db.commit()
        return conversation_id

    def conversation_exists(self, conversation_id: str) -> bool:
        row = self._db.execute("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return row is not None

    def append_turn(
        self, conversation_id: str, prompt: str, response: str, metadata: dict[str, Any] | None = None
    ) -> None:
        now = iso_utc(utc_now())
        self._db.executemany(
            """INSERT INTO conversation_messages (conversation_id, role, content, metadata, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            [
                (conversation_id, "user", prompt, None, now),
                (conversation_id, "assistant", response, json.dumps(metadata) if metadata else None, now),
            ],
        )
        self._db.commit()

    def get_messages(self, conversation_id: str) -> list[ConversationMessage]:
        rows = self._db.execute(
            "SELECT * FROM conversation_messages WHERE conversation_id = ? ORDER BY id", (conversation_id,)
        ).fetchall()
        return [
            ConversationMessage(
                role=row["role"],
                content=row["content"],
                metadata=json.loads(row["metadata"]) if row["metadata"] else None,
                created_at=row["created_at"],
            )
            for row in rows
        ]
