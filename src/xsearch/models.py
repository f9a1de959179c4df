"""Domain models shared by the stores, the engine and the job tracker."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class SearchMode(StrEnum):
    LATEST = "latest"
    TOP = "top"


class SessionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(StrEnum):
    SCRAPE = "scrape"
    SEARCH = "search"
    EMBED = "embed"
    DISCOVER = "discover"


class JobStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Source items ──────────────────────────────────────────────────────────


class TweetMetrics(BaseModel):
    like_count: int = 0
    retweet_count: int = 0
    reply_count: int = 0
    quote_count: int = 0


class TweetItem(BaseModel):
    tweet_id: str = ""
    text: str = ""
    author_username: str = ""
    author_name: str | None = None
    created_at: datetime | None = None
    metrics: TweetMetrics = Field(default_factory=TweetMetrics)
    is_retweet: bool = False
    is_reply: bool = False
    conversation_id: str | None = None
    # Pagination token of the page this item was fetched from (None = first page).
    page_token: str | None = None

    @property
    def available(self) -> bool:
        return bool(self.tweet_id and self.text)


# ── Search sessions ───────────────────────────────────────────────────────


class DateRange(BaseModel):
    start: datetime
    end: datetime


class SessionCursor(BaseModel):
    """Resume anchor: which sub-query and which page the checkpoint belongs to."""

    query_index: int = 0
    page_token: str | None = None

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, raw: str | None) -> SessionCursor:
        if not raw:
            return cls()
        return cls.model_validate_json(raw)


class SearchTopic(BaseModel):
    id: int
    name: str
    variants: list[str]
    created_at: datetime
    updated_at: datetime
    last_searched: datetime | None = None
    total_tweets_found: int = 0


class SearchSession(BaseModel):
    id: int
    topic_id: int | None = None
    query: str
    variants: list[str]
    mode: SearchMode = SearchMode.LATEST
    max_tweets: int
    date_start: datetime | None = None
    date_end: datetime | None = None
    cursor: str | None = None
    last_tweet_id: str | None = None
    tweets_collected: int = 0
    total_processed: int = 0
    duplicates_skipped: int = 0
    users_created: int = 0
    status: SessionStatus = SessionStatus.PENDING
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
    embeddings_generated: bool = False

    @property
    def date_range(self) -> DateRange | None:
        if self.date_start and self.date_end:
            return DateRange(start=self.date_start, end=self.date_end)
        return None

    @property
    def has_checkpoint(self) -> bool:
        return self.last_tweet_id is not None


class TweetOrigin(BaseModel):
    tweet_id: str
    search_session_id: int
    matched_variant: str
    found_at: datetime


class SearchStats(BaseModel):
    tweets_collected: int = 0
    total_processed: int = 0
    duplicates_skipped: int = 0
    users_created: int = 0
    embeddings_generated: bool = False
    session_id: int | None = None
    variant_breakdown: dict[str, int] = Field(default_factory=dict)


class SearchRequest(BaseModel):
    """Everything a caller supplies to start a search session."""

    variants: list[str] = Field(default_factory=list)
    name: str | None = None
    max_tweets: int = 100
    days: int | None = None
    since: str | None = None
    until: str | None = None
    mode: SearchMode = SearchMode.LATEST
    embed: bool = False


class CommandResult(BaseModel):
    success: bool
    message: str
    data: Any = None
    error: str | None = None


# ── Jobs ──────────────────────────────────────────────────────────────────


class JobProgress(BaseModel):
    current: int = 0
    total: int = 0
    message: str = ""


class Job(BaseModel):
    id: str
    type: JobType
    status: JobStatus = JobStatus.RUNNING
    progress: JobProgress = Field(default_factory=JobProgress)
    started_at: datetime
    completed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
