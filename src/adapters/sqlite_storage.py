"""SQLite storage adapter.

Implements the core StoragePort using a simple SQLite database.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from core.contracts import HintResult, ParseResult
from core.models import ChatSession, HintCacheEntry, HintProgress, MetricEvent, ParseRecord, TimelineEvent
from core.state_machine import ConversationState


def _dump(payload: Optional[dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False)


def _load(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if not raw:
        return None
    return json.loads(raw)


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


def _ts(value: Optional[datetime]) -> str:
    return (value or datetime.now(timezone.utc)).isoformat()


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - chat_sessions: durable part of each chat's session
        - parsed_tasks: parse cache keyed by (fingerprint, engine)
        - hints_cache: hint cache keyed by (fingerprint, engine, level)
        - timeline_events / metrics_events: append-only audit logs
        """

        with self._connect() as conn:
            # One row per chat. Pending pipeline pointers are not stored: a
            # restarted bot resumes from the state and the cached parse.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    chat_id INTEGER PRIMARY KEY,
                    state TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    grade INTEGER NOT NULL DEFAULT 0,
                    subject TEXT,
                    task_type TEXT,
                    fingerprint TEXT,
                    engine TEXT,
                    hint_next_level INTEGER,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # Drafts are overwritten in place; accepted marks the authoritative
            # parse for its session.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS parsed_tasks (
                    fingerprint TEXT NOT NULL,
                    engine TEXT NOT NULL,
                    chat_id INTEGER,
                    session_id TEXT,
                    subject TEXT,
                    task_type TEXT,
                    grade INTEGER,
                    combined_subpoints INTEGER NOT NULL DEFAULT 0,
                    raw_task_text TEXT,
                    needs_user_confirmation INTEGER NOT NULL DEFAULT 0,
                    accepted INTEGER NOT NULL DEFAULT 0,
                    accept_reason TEXT,
                    result_json TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (fingerprint, engine)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_parsed_tasks_session ON parsed_tasks (session_id, accepted)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS hints_cache (
                    fingerprint TEXT NOT NULL,
                    engine TEXT NOT NULL,
                    level INTEGER NOT NULL,
                    hint_json TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (fingerprint, engine, level)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS timeline_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chat_id INTEGER NOT NULL,
                    session_id TEXT,
                    direction TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    provider TEXT,
                    ok INTEGER NOT NULL,
                    latency_ms INTEGER,
                    message_id INTEGER,
                    text TEXT,
                    input_payload TEXT,
                    output_payload TEXT,
                    error TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metrics_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stage TEXT NOT NULL,
                    provider TEXT,
                    ok INTEGER NOT NULL,
                    error TEXT,
                    http_code INTEGER,
                    duration_ms INTEGER NOT NULL,
                    chat_id INTEGER,
                    session_id TEXT,
                    details TEXT,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )

    # --- parses -------------------------------------------------------------------

    def upsert_parse(self, record: ParseRecord) -> None:
        """Insert or fully overwrite the parse stored for (fingerprint, engine)."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO parsed_tasks (
                    fingerprint, engine, chat_id, session_id, subject, task_type, grade,
                    combined_subpoints, raw_task_text, needs_user_confirmation, accepted,
                    accept_reason, result_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(fingerprint, engine) DO UPDATE SET
                    chat_id = excluded.chat_id,
                    session_id = excluded.session_id,
                    subject = excluded.subject,
                    task_type = excluded.task_type,
                    grade = excluded.grade,
                    combined_subpoints = excluded.combined_subpoints,
                    raw_task_text = excluded.raw_task_text,
                    needs_user_confirmation = excluded.needs_user_confirmation,
                    accepted = excluded.accepted,
                    accept_reason = excluded.accept_reason,
                    result_json = excluded.result_json,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at
                """,
                (
                    record.fingerprint,
                    record.engine,
                    record.chat_id,
                    record.session_id,
                    record.subject,
                    record.task_type,
                    record.grade,
                    int(record.combined_subpoints),
                    record.raw_task_text,
                    int(record.needs_user_confirmation),
                    int(record.accepted),
                    record.accept_reason,
                    _dump(record.result.to_payload()),
                    _ts(record.created_at),
                    _ts(record.updated_at),
                ),
            )

    def _row_to_parse(self, row: sqlite3.Row) -> ParseRecord:
        return ParseRecord(
            fingerprint=row["fingerprint"],
            engine=row["engine"],
            chat_id=row["chat_id"],
            session_id=row["session_id"],
            result=ParseResult.from_payload(_load(row["result_json"]) or {}),
            accepted=bool(row["accepted"]),
            accept_reason=row["accept_reason"] or "",
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def find_parse(self, fingerprint: str, engine: str) -> Optional[ParseRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM parsed_tasks WHERE fingerprint = ? AND engine = ?",
                (fingerprint, engine),
            ).fetchone()
        return self._row_to_parse(row) if row else None

    def find_accepted_parse_for_session(self, session_id: str) -> Optional[ParseRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM parsed_tasks
                WHERE session_id = ? AND accepted = 1
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        return self._row_to_parse(row) if row else None

    def mark_accepted(self, fingerprint: str, engine: str, reason: str) -> bool:
        """Flag a drafted parse as accepted; False when no draft exists."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE parsed_tasks
                SET accepted = 1, accept_reason = ?, updated_at = ?
                WHERE fingerprint = ? AND engine = ?
                """,
                (reason, _ts(None), fingerprint, engine),
            )
            return cur.rowcount > 0

    # --- hints --------------------------------------------------------------------

    def upsert_hint(self, entry: HintCacheEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO hints_cache (fingerprint, engine, level, hint_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(fingerprint, engine, level) DO UPDATE SET
                    hint_json = excluded.hint_json,
                    created_at = excluded.created_at
                """,
                (
                    entry.fingerprint,
                    entry.engine,
                    entry.level,
                    _dump(entry.result.to_payload()),
                    _ts(entry.created_at),
                ),
            )

    def find_hint(self, fingerprint: str, engine: str, level: int) -> Optional[HintCacheEntry]:
        """Return the stored hint regardless of age; staleness is the caller's call."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM hints_cache WHERE fingerprint = ? AND engine = ? AND level = ?",
                (fingerprint, engine, level),
            ).fetchone()
        if row is None:
            return None
        return HintCacheEntry(
            fingerprint=row["fingerprint"],
            engine=row["engine"],
            level=row["level"],
            result=HintResult.from_payload(_load(row["hint_json"]) or {}),
            created_at=_parse_ts(row["created_at"]),
        )

    # --- sessions -----------------------------------------------------------------

    def upsert_session(self, session: ChatSession) -> None:
        next_level = session.hint_progress.next_level if session.hint_progress else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions (
                    chat_id, state, session_id, grade, subject, task_type,
                    fingerprint, engine, hint_next_level, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    state = excluded.state,
                    session_id = excluded.session_id,
                    grade = excluded.grade,
                    subject = excluded.subject,
                    task_type = excluded.task_type,
                    fingerprint = excluded.fingerprint,
                    engine = excluded.engine,
                    hint_next_level = excluded.hint_next_level,
                    updated_at = excluded.updated_at
                """,
                (
                    session.chat_id,
                    session.state.value,
                    session.session_id,
                    session.grade,
                    session.subject,
                    session.task_type,
                    session.fingerprint,
                    session.engine,
                    next_level,
                    _ts(None),
                ),
            )

    def find_session(self, chat_id: int) -> Optional[ChatSession]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chat_sessions WHERE chat_id = ?", (chat_id,)).fetchone()
        if row is None:
            return None
        try:
            state = ConversationState(row["state"])
        except ValueError:
            state = ConversationState.AWAITING_TASK
        session = ChatSession(
            chat_id=row["chat_id"],
            state=state,
            session_id=row["session_id"],
            grade=row["grade"] or 0,
            subject=row["subject"] or "",
            task_type=row["task_type"] or "",
            fingerprint=row["fingerprint"] or "",
            engine=row["engine"] or "",
        )
        if row["hint_next_level"]:
            session.hint_progress = HintProgress(next_level=row["hint_next_level"])
        return session

    # --- telemetry ----------------------------------------------------------------

    def insert_timeline_event(self, event: TimelineEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO timeline_events (
                    chat_id, session_id, direction, event_type, provider, ok, latency_ms,
                    message_id, text, input_payload, output_payload, error, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.chat_id,
                    event.session_id,
                    event.direction,
                    event.event_type,
                    event.provider,
                    int(event.ok),
                    event.latency_ms,
                    event.message_id,
                    event.text,
                    _dump(event.input_payload),
                    _dump(event.output_payload),
                    event.error,
                    _ts(None),
                ),
            )

    def insert_metric_event(self, event: MetricEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO metrics_events (
                    stage, provider, ok, error, http_code, duration_ms,
                    chat_id, session_id, details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.stage,
                    event.provider,
                    int(event.ok),
                    event.error,
                    event.http_code,
                    event.duration_ms,
                    event.chat_id,
                    event.session_id,
                    _dump(event.details),
                    _ts(None),
                ),
            )

    def list_timeline_events(self, chat_id: int, limit: int = 50) -> list[TimelineEvent]:
        """Return the chat's most recent timeline events, oldest first."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM timeline_events WHERE chat_id = ? ORDER BY id DESC LIMIT ?",
                (chat_id, limit),
            ).fetchall()
        return [
            TimelineEvent(
                chat_id=row["chat_id"],
                session_id=row["session_id"] or "",
                direction=row["direction"],
                event_type=row["event_type"],
                provider=row["provider"] or "",
                ok=bool(row["ok"]),
                latency_ms=row["latency_ms"],
                message_id=row["message_id"],
                text=row["text"] or "",
                input_payload=_load(row["input_payload"]),
                output_payload=_load(row["output_payload"]),
                error=row["error"] or "",
            )
            for row in reversed(rows)
        ]

    # --- maintenance --------------------------------------------------------------

    def purge_older_than(self, age: timedelta) -> int:
        """Delete cached parses and hints older than ``age``; return rows removed."""

        cutoff = (datetime.now(timezone.utc) - age).isoformat()
        with self._connect() as conn:
            parses = conn.execute("DELETE FROM parsed_tasks WHERE updated_at < ?", (cutoff,))
            hints = conn.execute("DELETE FROM hints_cache WHERE created_at < ?", (cutoff,))
            return parses.rowcount + hints.rowcount
