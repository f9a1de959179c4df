"""X API v2 Recent Search client (read-only, paginated)."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import requests

from xsearch.errors import AuthenticationError, RateLimitedError, ValidationError, XClientError
from xsearch.models import DateRange, SearchMode, TweetItem, TweetMetrics

logger = logging.getLogger(__name__)

_RECENT_SEARCH_URL = "https://api.twitter.com/2/tweets/search/recent"

# Fields we always request.
_TWEET_FIELDS = "created_at,public_metrics,author_id,conversation_id,referenced_tweets"
_EXPANSIONS = "author_id"
_USER_FIELDS = "username,name"

_SORT_ORDER = {SearchMode.LATEST: "recency", SearchMode.TOP: "relevancy"}

# v2 takes date bounds as parameters, not query operators.
_SINCE_RE = re.compile(r"\s*\bsince:(\d{4}-\d{2}-\d{2})")
_UNTIL_RE = re.compile(r"\s*\buntil:(\d{4}-\d{2}-\d{2})")

# Recent Search only reaches back seven days, and end_time must trail the
# request by at least ten seconds.
_RECENT_WINDOW = timedelta(days=7)
_START_MARGIN = timedelta(minutes=1)
_END_MARGIN = timedelta(seconds=10)
_RFC3339 = "%Y-%m-%dT%H:%M:%SZ"


class SearchSource(Protocol):
    """Anything that yields matching tweets for a query, page by page."""

    def search(
        self,
        query: str,
        page_size: int = 100,
        mode: SearchMode = SearchMode.LATEST,
        cursor: str | None = None,
        date_range: DateRange | None = None,
    ) -> AsyncIterator[TweetItem]: ...


def split_date_operators(query: str) -> tuple[str, dict[str, str]]:
    """Move ``since:``/``until:`` out of *query* into ``start_time``/``end_time``."""
    params: dict[str, str] = {}
    since = _SINCE_RE.search(query)
    if since:
        params["start_time"] = f"{since.group(1)}T00:00:00Z"
        query = _SINCE_RE.sub("", query)
    until = _UNTIL_RE.search(query)
    if until:
        params["end_time"] = f"{until.group(1)}T00:00:00Z"
        query = _UNTIL_RE.sub("", query)
    return query.strip(), params


def date_params(date_range: DateRange, now: datetime | None = None) -> dict[str, str]:
    """Exact ``start_time``/``end_time`` for *date_range*, clamped to what Recent Search accepts."""
    now = now or datetime.now(UTC)
    start = max(_as_utc(date_range.start), now - _RECENT_WINDOW + _START_MARGIN)
    end = min(_as_utc(date_range.end), now - _END_MARGIN)
    if end <= start:
        raise ValidationError(
            "Date range is outside the last 7 days; X Recent Search cannot reach it."
        )
    return {"start_time": start.strftime(_RFC3339), "end_time": end.strftime(_RFC3339)}


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


class XClient:
    """Thin wrapper around ``GET /2/tweets/search/recent``."""

    def __init__(self, bearer_token: str, timeout: float = 30) -> None:
        if not bearer_token:
            raise AuthenticationError("X_BEARER_TOKEN is required but was empty.")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {bearer_token}"})

    # ── public ──────────────────────────────────────────────────────────
    async def search(
        self,
        query: str,
        page_size: int = 100,
        mode: SearchMode = SearchMode.LATEST,
        cursor: str | None = None,
        date_range: DateRange | None = None,
    ) -> AsyncIterator[TweetItem]:
        """Yield every tweet matching *query*, starting at page *cursor*.

        Each item carries the token of the page it came from so callers can
        re-open the search at that page after an interruption. With
        *date_range* the window is sent exactly; day-granular ``since:``/
        ``until:`` operators in *query* are then only dropped.
        """
        text, window = split_date_operators(query)
        if date_range is not None:
            window = date_params(date_range)
        page_token = cursor
        while True:
            params: dict[str, Any] = {
                "query": text,
                "max_results": min(max(page_size, 10), 100),
                "sort_order": _SORT_ORDER[SearchMode(mode)],
                "tweet.fields": _TWEET_FIELDS,
                "expansions": _EXPANSIONS,
                "user.fields": _USER_FIELDS,
                **window,
            }
            if page_token:
                params["next_token"] = page_token

            # requests is blocking; keep the event loop free while we wait.
            data = await asyncio.to_thread(self._get, params)
            items = self._parse(data, page_token)
            logger.debug("Fetched %d tweets (page %s)", len(items), page_token or "first")
            for item in items:
                yield item

            page_token = data.get("meta", {}).get("next_token")
            if not page_token:
                return

    def close(self) -> None:
        self._session.close()

    # ── private ─────────────────────────────────────────────────────────
    @staticmethod
    def _parse(data: dict[str, Any], page_token: str | None) -> list[TweetItem]:
        tweets_raw: list[dict[str, Any]] = data.get("data", [])
        if not tweets_raw:
            return []

        # Build author-id → user map from expansions
        includes = data.get("includes", {})
        users: dict[str, dict[str, Any]] = {
            str(u["id"]): u for u in includes.get("users", [])
        }

        items: list[TweetItem] = []
        for raw in tweets_raw:
            pm = raw.get("public_metrics", {})
            author = users.get(str(raw.get("author_id", "")), {})
            refs = {r.get("type") for r in raw.get("referenced_tweets", []) or []}
            items.append(
                TweetItem(
                    tweet_id=str(raw.get("id", "")),
                    text=raw.get("text", ""),
                    author_username=author.get("username", ""),
                    author_name=author.get("name"),
                    created_at=raw.get("created_at"),
                    metrics=TweetMetrics(
                        like_count=pm.get("like_count", 0),
                        retweet_count=pm.get("retweet_count", 0),
                        reply_count=pm.get("reply_count", 0),
                        quote_count=pm.get("quote_count", 0),
                    ),
                    is_retweet="retweeted" in refs,
                    is_reply="replied_to" in refs,
                    conversation_id=raw.get("conversation_id"),
                    page_token=page_token,
                )
            )
        return items

    def _get(self, params: dict[str, Any]) -> dict[str, Any]:
        resp = self._session.get(_RECENT_SEARCH_URL, params=params, timeout=self._timeout)
        if resp.status_code == 429:
            retry_after = _retry_after(resp)
            raise RateLimitedError(
                f"X API rate limit (429 Too Many Requests); retry after {int(retry_after)}s",
                retry_after=retry_after,
            )
        if resp.status_code != 200:
            raise XClientError(
                f"X API returned {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
            )
        return resp.json()  # type: ignore[no-any-return]


def _retry_after(resp: requests.Response, default: float = 60.0) -> float:
    """Seconds until the rate-limit window resets, per the response headers."""
    reset = resp.headers.get("x-rate-limit-reset")
    if reset and reset.isdigit():
        return max(float(reset) - time.time(), 1.0)
    retry_after = resp.headers.get("Retry-After")
    if retry_after and retry_after.isdigit():
        return float(retry_after)
    return default
