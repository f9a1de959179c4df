"""Search sessions and named topics (SQLite)."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any

from xsearch.errors import ConflictError
from xsearch.models import SearchMode, SearchSession, SearchTopic, SessionStatus
from xsearch.store import SqliteStore, to_db_time, utcnow

logger = logging.getLogger(__name__)

# Columns callers may change through update_session().
_UPDATABLE = frozenset(
    {
        "cursor",
        "last_tweet_id",
        "tweets_collected",
        "total_processed",
        "duplicates_skipped",
        "users_created",
        "status",
        "completed_at",
        "error_message",
        "embeddings_generated",
    }
)


def _session_from_row(row: sqlite3.Row) -> SearchSession:
    data: dict[str, Any] = dict(row)
    data["variants"] = json.loads(data["variants"])
    data["embeddings_generated"] = bool(data["embeddings_generated"])
    return SearchSession(**data)


def _topic_from_row(row: sqlite3.Row) -> SearchTopic:
    data: dict[str, Any] = dict(row)
    data["variants"] = json.loads(data["variants"])
    return SearchTopic(**data)


class SessionStore(SqliteStore):
    """Rows of ``search_sessions`` and ``search_topics``."""

    # ── sessions ────────────────────────────────────────────────────────

    def create_session(
        self,
        *,
        query: str,
        variants: list[str],
        mode: SearchMode,
        max_tweets: int,
        topic_id: int | None = None,
        date_start: Any = None,
        date_end: Any = None,
        status: SessionStatus = SessionStatus.RUNNING,
    ) -> SearchSession:
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    INSERT INTO search_sessions
                        (topic_id, query, variants, mode, max_tweets,
                         date_start, date_end, status, started_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        topic_id,
                        query,
                        json.dumps(variants),
                        str(mode),
                        max_tweets,
                        to_db_time(date_start),
                        to_db_time(date_end),
                        str(status),
                        to_db_time(utcnow()),
                    ),
                )
                session_id = int(cur.lastrowid or 0)
        finally:
            con.close()
        session = self.get_session(session_id)
        assert session is not None
        logger.debug("Created search session %d", session.id)
        return session

    def get_session(self, session_id: int) -> SearchSession | None:
        con = self._connect()
        try:
            row = con.execute(
                "SELECT * FROM search_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        finally:
            con.close()
        return _session_from_row(row) if row else None

    def update_session(self, session_id: int, **updates: Any) -> None:
        unknown = set(updates) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update session columns: {sorted(unknown)}")
        if not updates:
            return

        values: list[Any] = []
        for key, value in updates.items():
            if key == "completed_at":
                value = to_db_time(value)
            elif key == "status":
                value = str(value)
            elif key == "embeddings_generated":
                value = int(bool(value))
            values.append(value)

        assignments = ", ".join(f"{key} = ?" for key in updates)
        con = self._connect()
        try:
            with con:
                con.execute(
                    f"UPDATE search_sessions SET {assignments} WHERE id = ?",
                    (*values, session_id),
                )
        finally:
            con.close()

    def get_sessions_by_status(self, status: SessionStatus) -> list[SearchSession]:
        con = self._connect()
        try:
            rows = con.execute(
                "SELECT * FROM search_sessions WHERE status = ? ORDER BY started_at DESC",
                (str(status),),
            ).fetchall()
        finally:
            con.close()
        return [_session_from_row(r) for r in rows]

    def cleanup_old_sessions(self, older_than_days: int) -> int:
        """Delete sessions started more than *older_than_days* ago; return the count."""
        cutoff = to_db_time(utcnow() - timedelta(days=older_than_days))
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    "DELETE FROM search_sessions WHERE started_at < ?", (cutoff,)
                )
            return cur.rowcount
        finally:
            con.close()

    # ── topics ──────────────────────────────────────────────────────────

    def create_topic(self, name: str, variants: list[str]) -> SearchTopic:
        now = to_db_time(utcnow())
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    INSERT OR IGNORE INTO search_topics (name, variants, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (name, json.dumps(variants), now, now),
                )
                inserted = cur.rowcount == 1
        finally:
            con.close()
        if not inserted:
            raise ConflictError(
                f'Topic "{name}" already exists. Use --name to search with it, '
                "or choose a different name."
            )
        topic = self.get_topic_by_name(name)
        assert topic is not None
        return topic

    def get_topic_by_name(self, name: str) -> SearchTopic | None:
        con = self._connect()
        try:
            row = con.execute(
                "SELECT * FROM search_topics WHERE name = ?", (name,)
            ).fetchone()
        finally:
            con.close()
        return _topic_from_row(row) if row else None

    def update_topic_stats(self, topic_id: int, tweets_found: int) -> None:
        now = to_db_time(utcnow())
        con = self._connect()
        try:
            with con:
                con.execute(
                    """
                    UPDATE search_topics
                       SET total_tweets_found = total_tweets_found + ?,
                           last_searched = ?, updated_at = ?
                     WHERE id = ?
                    """,
                    (tweets_found, now, now, topic_id),
                )
        finally:
            con.close()
