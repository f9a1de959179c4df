"""SQLite-backed tweet store: tweets, their authors and first-search origins."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from xsearch.models import TweetItem, TweetOrigin

logger = logging.getLogger(__name__)

# One file holds every table; each store creates the full schema so any of
# them can be opened first.
_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    username     TEXT NOT NULL UNIQUE,
    display_name TEXT,
    last_scraped TEXT,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tweets (
    id          TEXT PRIMARY KEY,
    text        TEXT NOT NULL,
    user_id     INTEGER NOT NULL REFERENCES users(id),
    username    TEXT NOT NULL,
    created_at  TEXT,
    scraped_at  TEXT NOT NULL,
    is_retweet  INTEGER NOT NULL DEFAULT 0,
    is_reply    INTEGER NOT NULL DEFAULT 0,
    likes       INTEGER NOT NULL DEFAULT 0,
    retweets    INTEGER NOT NULL DEFAULT 0,
    replies     INTEGER NOT NULL DEFAULT 0,
    metadata    TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS search_topics (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    name               TEXT NOT NULL UNIQUE,
    variants           TEXT NOT NULL,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL,
    last_searched      TEXT,
    total_tweets_found INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS search_sessions (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    topic_id             INTEGER REFERENCES search_topics(id),
    query                TEXT NOT NULL,
    variants             TEXT NOT NULL,
    mode                 TEXT NOT NULL DEFAULT 'latest',
    max_tweets           INTEGER NOT NULL,
    date_start           TEXT,
    date_end             TEXT,
    cursor               TEXT,
    last_tweet_id        TEXT,
    tweets_collected     INTEGER NOT NULL DEFAULT 0,
    total_processed      INTEGER NOT NULL DEFAULT 0,
    duplicates_skipped   INTEGER NOT NULL DEFAULT 0,
    users_created        INTEGER NOT NULL DEFAULT 0,
    status               TEXT NOT NULL DEFAULT 'pending',
    started_at           TEXT NOT NULL,
    completed_at         TEXT,
    error_message        TEXT,
    embeddings_generated INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS tweet_search_origins (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    tweet_id          TEXT NOT NULL UNIQUE REFERENCES tweets(id) ON DELETE CASCADE,
    search_session_id INTEGER NOT NULL REFERENCES search_sessions(id) ON DELETE CASCADE,
    matched_variant   TEXT NOT NULL,
    found_at          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_origins_session ON tweet_search_origins(search_session_id);
CREATE INDEX IF NOT EXISTS idx_origins_variant ON tweet_search_origins(matched_variant);

CREATE TABLE IF NOT EXISTS jobs (
    id               TEXT PRIMARY KEY,
    type             TEXT NOT NULL,
    status           TEXT NOT NULL,
    progress_current INTEGER NOT NULL DEFAULT 0,
    progress_total   INTEGER NOT NULL DEFAULT 0,
    progress_message TEXT NOT NULL DEFAULT '',
    metadata         TEXT NOT NULL DEFAULT '{}',
    started_at       TEXT NOT NULL,
    completed_at     TEXT,
    error_message    TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_started ON jobs(started_at);
"""


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_db_time(dt: datetime | None) -> str | None:
    """Normalise to UTC ISO-8601 so stored timestamps compare as strings."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


class SqliteStore:
    """Shared connection handling for the stores living in one database file."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self._db_path))
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        return con

    def _init_db(self) -> None:
        con = self._connect()
        try:
            con.executescript(_SCHEMA)
        finally:
            con.close()


class TweetStore(SqliteStore):
    """Append-only tweet archive plus first-discovery attribution."""

    # ── tweets ──────────────────────────────────────────────────────────

    def tweet_exists(self, tweet_id: str) -> bool:
        con = self._connect()
        try:
            cur = con.execute("SELECT 1 FROM tweets WHERE id = ?", (tweet_id,))
            return cur.fetchone() is not None
        finally:
            con.close()

    def insert_tweet(self, item: TweetItem, user_id: int) -> bool:
        """Insert a tweet; return True if it was new, False if already present."""
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    INSERT OR IGNORE INTO tweets
                        (id, text, user_id, username, created_at, scraped_at,
                         is_retweet, is_reply, likes, retweets, replies, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        item.tweet_id,
                        " ".join(item.text.split()),
                        user_id,
                        item.author_username or "unknown",
                        to_db_time(item.created_at or utcnow()),
                        to_db_time(utcnow()),
                        int(item.is_retweet),
                        int(item.is_reply),
                        item.metrics.like_count,
                        item.metrics.retweet_count,
                        item.metrics.reply_count,
                        json.dumps(
                            {
                                "quote_count": item.metrics.quote_count,
                                "conversation_id": item.conversation_id,
                            }
                        ),
                    ),
                )
            return cur.rowcount == 1
        finally:
            con.close()

    # ── users ───────────────────────────────────────────────────────────

    def upsert_user(self, username: str, display_name: str | None = None) -> tuple[int, bool]:
        """Return ``(user_id, created)`` for *username*, creating it if needed."""
        now = to_db_time(utcnow())
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    INSERT OR IGNORE INTO users
                        (username, display_name, last_scraped, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (username, display_name, now, now, now),
                )
                created = cur.rowcount == 1
                if not created:
                    con.execute(
                        """
                        UPDATE users
                           SET last_scraped = ?, updated_at = ?,
                               display_name = COALESCE(?, display_name)
                         WHERE username = ?
                        """,
                        (now, now, display_name, username),
                    )
                row = con.execute(
                    "SELECT id FROM users WHERE username = ?", (username,)
                ).fetchone()
            return int(row["id"]), created
        finally:
            con.close()

    # ── origins ─────────────────────────────────────────────────────────

    def record_origin(self, tweet_id: str, session_id: int, matched_variant: str) -> bool:
        """Attribute *tweet_id* to a session; False if it already has an origin."""
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    INSERT OR IGNORE INTO tweet_search_origins
                        (tweet_id, search_session_id, matched_variant, found_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (tweet_id, session_id, matched_variant, to_db_time(utcnow())),
                )
            return cur.rowcount == 1
        finally:
            con.close()

    def get_origin(self, tweet_id: str) -> TweetOrigin | None:
        con = self._connect()
        try:
            row = con.execute(
                """
                SELECT tweet_id, search_session_id, matched_variant, found_at
                  FROM tweet_search_origins WHERE tweet_id = ?
                """,
                (tweet_id,),
            ).fetchone()
        finally:
            con.close()
        return TweetOrigin(**dict(row)) if row else None

    def variant_breakdown(self, session_id: int) -> dict[str, int]:
        con = self._connect()
        try:
            cur = con.execute(
                """
                SELECT matched_variant, COUNT(*) FROM tweet_search_origins
                 WHERE search_session_id = ?
                 GROUP BY matched_variant
                """,
                (session_id,),
            )
            return {row[0]: row[1] for row in cur.fetchall()}
        finally:
            con.close()
