"""SQLite storage helpers for interview sessions and conversation turns."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import List, Optional

from .models import ConversationTurn, InterviewSession, TurnKind


class SessionStore:
    """Persistent storage built on SQLite."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    profile TEXT NOT NULL,
                    language TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    system_prompt TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    kind TEXT NOT NULL,
                    question TEXT NOT NULL,
                    answer TEXT NOT NULL,
                    suppressed INTEGER NOT NULL DEFAULT 0,
                    interrupted INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(session_id) REFERENCES sessions(id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    event TEXT NOT NULL,
                    payload TEXT,
                    timestamp REAL NOT NULL,
                    FOREIGN KEY(session_id) REFERENCES sessions(id)
                )
                """
            )
            conn.commit()

    def save_session(self, session: InterviewSession) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sessions (id, profile, language, created_at, system_prompt)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.profile,
                    session.language,
                    session.created_at,
                    session.system_prompt,
                ),
            )
            conn.commit()

    def save_turn(self, session_id: str, turn: ConversationTurn) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO turns (session_id, timestamp, kind, question, answer, suppressed, interrupted)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    turn.timestamp,
                    turn.kind.value,
                    turn.question,
                    turn.answer,
                    int(turn.suppressed),
                    int(turn.interrupted),
                ),
            )
            conn.commit()

    def save_metric(self, session_id: str, event: str, payload: dict, timestamp: float) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO metrics (session_id, event, payload, timestamp) VALUES (?, ?, ?, ?)",
                (session_id, event, json.dumps(payload) if payload else None, timestamp),
            )
            conn.commit()

    def fetch_session(self, session_id: str) -> Optional[InterviewSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, profile, language, created_at, system_prompt FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        if not row:
            return None
        return InterviewSession(
            id=row[0],
            profile=row[1],
            language=row[2],
            created_at=row[3],
            system_prompt=row[4],
        )

    def list_sessions(self) -> List[InterviewSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, profile, language, created_at, system_prompt FROM sessions ORDER BY created_at DESC"
            ).fetchall()
        return [
            InterviewSession(id=row[0], profile=row[1], language=row[2], created_at=row[3], system_prompt=row[4])
            for row in rows
        ]

    def fetch_turns(self, session_id: str, include_suppressed: bool = False) -> List[ConversationTurn]:
        query = "SELECT timestamp, kind, question, answer, suppressed, interrupted FROM turns WHERE session_id = ?"
        if not include_suppressed:
            query += " AND suppressed = 0"
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, (session_id,)).fetchall()
        return [
            ConversationTurn(
                timestamp=timestamp,
                kind=TurnKind(kind),
                question=question,
                answer=answer,
                suppressed=bool(suppressed),
                interrupted=bool(interrupted),
            )
            for timestamp, kind, question, answer, suppressed, interrupted in rows
        ]

    def fetch_metrics(self, session_id: str) -> List[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT event, payload, timestamp FROM metrics WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        results = []
        for event, payload_json, timestamp in rows:
            payload = json.loads(payload_json) if payload_json else {}
            results.append({"event": event, "timestamp": timestamp, **payload})
        return results


__all__ = ["SessionStore"]
