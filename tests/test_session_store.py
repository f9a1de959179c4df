"""Tests for search sessions and named topics."""

from datetime import timedelta
from pathlib import Path

import pytest

from xsearch.errors import ConflictError
from xsearch.models import SearchMode, SessionCursor, SessionStatus, TweetItem
from xsearch.session_store import SessionStore
from xsearch.store import TweetStore, to_db_time, utcnow


@pytest.fixture()
def sessions(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "test.sqlite3")


def _create(sessions: SessionStore, **kwargs: object) -> int:
    params: dict = {
        "query": '"AGI" -is:retweet',
        "variants": ["AGI", "GPT-5"],
        "mode": SearchMode.TOP,
        "max_tweets": 25,
    }
    params.update(kwargs)
    return sessions.create_session(**params).id


class TestSessions:
    def test_create_and_get(self, sessions: SessionStore) -> None:
        session = sessions.get_session(_create(sessions))
        assert session is not None
        assert session.variants == ["AGI", "GPT-5"]
        assert session.mode is SearchMode.TOP
        assert session.status is SessionStatus.RUNNING
        assert not session.has_checkpoint

    def test_get_missing(self, sessions: SessionStore) -> None:
        assert sessions.get_session(999) is None

    def test_update_counters_and_cursor(self, sessions: SessionStore) -> None:
        session_id = _create(sessions)
        cursor = SessionCursor(query_index=1, page_token="abc")
        sessions.update_session(
            session_id,
            tweets_collected=3,
            cursor=cursor.encode(),
            last_tweet_id="42",
            status=SessionStatus.PAUSED,
        )
        session = sessions.get_session(session_id)
        assert session is not None
        assert session.tweets_collected == 3
        assert session.status is SessionStatus.PAUSED
        assert session.has_checkpoint
        assert SessionCursor.decode(session.cursor) == cursor

    def test_update_rejects_unknown_columns(self, sessions: SessionStore) -> None:
        with pytest.raises(ValueError):
            sessions.update_session(_create(sessions), query="DROP")

    def test_by_status(self, sessions: SessionStore) -> None:
        paused = _create(sessions)
        _create(sessions)
        sessions.update_session(paused, status=SessionStatus.PAUSED)
        assert [s.id for s in sessions.get_sessions_by_status(SessionStatus.PAUSED)] == [paused]

    def test_cleanup_deletes_old_sessions_and_origins(self, sessions: SessionStore) -> None:
        records = TweetStore(sessions.db_path)
        old, recent = _create(sessions), _create(sessions)
        user_id, _ = records.upsert_user("alice")
        records.insert_tweet(TweetItem(tweet_id="1", text="AGI"), user_id)
        records.record_origin("1", old, "AGI")

        con = sessions._connect()
        try:
            with con:
                con.execute(
                    "UPDATE search_sessions SET started_at = ? WHERE id = ?",
                    (to_db_time(utcnow() - timedelta(days=40)), old),
                )
        finally:
            con.close()

        assert sessions.cleanup_old_sessions(30) == 1
        assert sessions.get_session(old) is None
        assert sessions.get_session(recent) is not None
        assert records.get_origin("1") is None
        # The tweet itself stays.
        assert records.tweet_exists("1")


class TestTopics:
    def test_create_and_lookup(self, sessions: SessionStore) -> None:
        topic = sessions.create_topic("frontier", ["AGI", "GPT-5"])
        assert sessions.get_topic_by_name("frontier") == topic
        assert topic.total_tweets_found == 0

    def test_duplicate_name_conflicts(self, sessions: SessionStore) -> None:
        sessions.create_topic("frontier", ["AGI"])
        with pytest.raises(ConflictError):
            sessions.create_topic("frontier", ["GPT-5"])

    def test_update_stats_accumulates(self, sessions: SessionStore) -> None:
        topic = sessions.create_topic("frontier", ["AGI"])
        sessions.update_topic_stats(topic.id, 3)
        sessions.update_topic_stats(topic.id, 4)
        updated = sessions.get_topic_by_name("frontier")
        assert updated is not None
        assert updated.total_tweets_found == 7
        assert updated.last_searched is not None
