"""Search session engine: plan, execute, checkpoint, finalize.

One session drives the X search for an ordered list of variants, stores
every tweet it has not seen before, attributes it to the variant that
matched, and checkpoints a resume cursor as it goes. Rate limits are waited
out and the same sub-query is re-opened at the page it stopped on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field

from xsearch import config
from xsearch.errors import (
    ConflictError,
    ErrorType,
    NotFoundError,
    ValidationError,
    classify_error,
    compute_delay,
    format_delay,
    with_retry,
)
from xsearch.jobs import JobContext, JobTrackingService
from xsearch.models import (
    CommandResult,
    DateRange,
    JobType,
    SearchMode,
    SearchRequest,
    SearchSession,
    SearchStats,
    SearchTopic,
    SessionCursor,
    SessionStatus,
    TweetItem,
)
from xsearch.query import (
    build_query,
    build_queries,
    calculate_date_range,
    format_date_range,
    match_variant,
    split_query,
)
from xsearch.session_store import SessionStore
from xsearch.store import TweetStore, utcnow
from xsearch.x_client import SearchSource

logger = logging.getLogger(__name__)

# Embeds the tweets of one session; returns how many vectors were written.
Embedder = Callable[[int], Awaitable[int]]

_NO_RESULTS_HINT = (
    "Suggestions:\n"
    "- Add more variant spellings\n"
    "- Extend the date range with --days\n"
    "- Try --mode top for popular tweets"
)


@dataclass
class SearchPlan:
    variants: list[str]
    groups: list[list[str]]
    queries: list[str]
    date_range: DateRange | None
    mode: SearchMode
    max_tweets: int


@dataclass
class SearchRun:
    """An opened session plus the loop state owned by its executing task."""

    session: SearchSession
    queries: list[str]
    variants: list[str]
    mode: SearchMode
    max_tweets: int
    stats: SearchStats
    date_range: DateRange | None = None
    cursor: SessionCursor = field(default_factory=SessionCursor)
    job: JobContext | None = None
    topic_id: int | None = None
    embed: bool = False
    resume_after: str | None = None
    last_tweet_id: str | None = None
    new_tweets: int = 0
    cancelled: bool = False
    seen: set[str] = field(default_factory=set)

    @property
    def session_id(self) -> int:
        return self.session.id

    @property
    def job_id(self) -> str | None:
        return self.job.job_id if self.job else None

    @property
    def target_reached(self) -> bool:
        return self.stats.tweets_collected >= self.max_tweets


class SearchSessionEngine:
    """Start, resume and clean up search sessions."""

    def __init__(
        self,
        source: SearchSource | None,
        records: TweetStore,
        sessions: SessionStore,
        tracker: JobTrackingService | None = None,
        embedder: Embedder | None = None,
        *,
        page_size: int = config.PAGE_SIZE,
        checkpoint_every: int = config.CHECKPOINT_EVERY,
        rate_limit_max_wait: float = config.RATE_LIMIT_MAX_WAIT,
        rate_limit_max_retries: int = config.RATE_LIMIT_MAX_RETRIES,
        query_max_attempts: int = config.QUERY_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._source = source
        self._records = records
        self._sessions = sessions
        self._tracker = tracker
        self._embedder = embedder
        self._page_size = page_size
        self._checkpoint_every = checkpoint_every
        self._rate_limit_max_wait = rate_limit_max_wait
        self._rate_limit_max_retries = rate_limit_max_retries
        self._query_max_attempts = query_max_attempts
        self._sleep = sleep

    # ── planning ────────────────────────────────────────────────────────

    @staticmethod
    def plan(request: SearchRequest) -> SearchPlan:
        """Validate *request* and compute the sub-queries. No I/O."""
        variants = [v.strip() for v in request.variants if v.strip()]
        if not variants:
            raise ValidationError("At least one search variant required")
        if request.max_tweets <= 0:
            raise ValidationError("Max tweets must be greater than 0")

        date_range = calculate_date_range(request.days, request.since, request.until)
        groups = split_query(variants)
        return SearchPlan(
            variants=variants,
            groups=groups,
            queries=[build_query(g, date_range) for g in groups],
            date_range=date_range,
            mode=request.mode,
            max_tweets=request.max_tweets,
        )

    @classmethod
    def dry_run(cls, request: SearchRequest) -> CommandResult:
        """Describe exactly what would be sent to X, without touching anything."""
        plan = cls.plan(request)
        total_length = sum(len(q) for q in plan.queries)

        lines = [
            "Dry Run - Query Preview",
            "",
            f"Variants ({len(plan.variants)}): " + ", ".join(f'"{v}"' for v in plan.variants),
        ]
        if plan.date_range:
            lines.append(f"Date range: {format_date_range(plan.date_range)} (UTC)")
        lines += [f"Search mode: {plan.mode}", f"Max tweets: {plan.max_tweets}", ""]
        if len(plan.queries) > 1:
            lines.append(f"X queries ({len(plan.queries)} splits due to length):")
            lines += [f"  {i}. {q}" for i, q in enumerate(plan.queries, start=1)]
        else:
            lines += ["X query:", plan.queries[0]]
        lines += ["", f"Total query length: {total_length}/{config.QUERY_LENGTH_LIMIT} characters"]

        return CommandResult(
            success=True,
            message="\n".join(lines),
            data={
                "variants": plan.variants,
                "groups": plan.groups,
                "queries": plan.queries,
                "mode": str(plan.mode),
                "max_tweets": plan.max_tweets,
                "date_range": plan.date_range.model_dump(mode="json") if plan.date_range else None,
                "total_length": total_length,
            },
        )

    # ── start / resume / cleanup ────────────────────────────────────────

    async def start_search(self, request: SearchRequest) -> CommandResult:
        return await self.run(self.open_search(request))

    async def resume_search(self, session_id: int) -> CommandResult:
        return await self.run(self.open_resume(session_id))

    def open_search(self, request: SearchRequest) -> SearchRun:
        """Validate, create the session row and its job; execution starts in :meth:`run`."""
        if not request.variants and request.name:
            topic = self._sessions.get_topic_by_name(request.name)
            if topic is not None:
                request = request.model_copy(update={"variants": topic.variants})

        plan = self.plan(request)
        self._require_source()

        topic = self._resolve_topic(request.name, plan.variants) if request.name else None
        session = self._sessions.create_session(
            query=" | ".join(plan.queries),
            variants=plan.variants,
            mode=plan.mode,
            max_tweets=plan.max_tweets,
            topic_id=topic.id if topic else None,
            date_start=plan.date_range.start if plan.date_range else None,
            date_end=plan.date_range.end if plan.date_range else None,
            status=SessionStatus.RUNNING,
        )

        logger.info("Starting search (session %d)", session.id)
        logger.info("Variants: %s", ", ".join(f'"{v}"' for v in plan.variants))
        if plan.date_range:
            logger.info("Date range: %s", format_date_range(plan.date_range))
        logger.info("Mode: %s, Max: %d", plan.mode, plan.max_tweets)

        return SearchRun(
            session=session,
            queries=plan.queries,
            variants=plan.variants,
            mode=plan.mode,
            max_tweets=plan.max_tweets,
            stats=SearchStats(session_id=session.id),
            date_range=plan.date_range,
            job=self._create_job(session, plan.variants),
            topic_id=session.topic_id,
            embed=request.embed,
        )

    def open_resume(self, session_id: int) -> SearchRun:
        """Check that *session_id* can be resumed and reopen it as running."""
        session = self._sessions.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Search session {session_id} not found")
        if session.status is SessionStatus.COMPLETED:
            raise ValidationError(f"Search session {session_id} is already completed")
        if session.cursor is None or not session.has_checkpoint:
            raise ValidationError(f"No cursor saved for session {session_id}. Cannot resume.")
        if self._is_tracked(session_id):
            raise ConflictError(f"Search session {session_id} is already running")
        self._require_source()

        queries = build_queries(session.variants, session.date_range)
        cursor = SessionCursor.decode(session.cursor)
        if cursor.query_index >= len(queries):
            cursor = SessionCursor()

        self._sessions.update_session(
            session_id, status=SessionStatus.RUNNING, completed_at=None, error_message=None
        )
        logger.info("Resuming search session %d", session_id)
        logger.info(
            "Progress: %d/%d tweets collected", session.tweets_collected, session.max_tweets
        )

        return SearchRun(
            session=session,
            queries=queries,
            variants=session.variants,
            mode=session.mode,
            max_tweets=session.max_tweets,
            stats=SearchStats(
                session_id=session_id,
                tweets_collected=session.tweets_collected,
                total_processed=session.total_processed,
                duplicates_skipped=session.duplicates_skipped,
                users_created=session.users_created,
            ),
            date_range=session.date_range,
            cursor=cursor,
            job=self._create_job(session, session.variants, resumed=True),
            resume_after=session.last_tweet_id,
            last_tweet_id=session.last_tweet_id,
            topic_id=session.topic_id,
        )

    def cleanup(self, older_than_days: int) -> CommandResult:
        if older_than_days < 0:
            raise ValidationError("--older-than must not be negative")
        deleted = self._sessions.cleanup_old_sessions(older_than_days)
        logger.info("Deleted %d search sessions older than %d days", deleted, older_than_days)
        return CommandResult(
            success=True,
            message=f"Deleted {deleted} search sessions older than {older_than_days} days",
            data={"deleted": deleted, "older_than_days": older_than_days},
        )

    # ── session lifecycle ───────────────────────────────────────────────

    async def run(self, run: SearchRun) -> CommandResult:
        """Execute an opened session to completion, pause or failure."""
        try:
            if await self._execute(run):
                return await self._complete(run)
        except asyncio.CancelledError:
            self._pause(run, reason="interrupted")
            self._finish_job(run, False, "Interrupted")
            raise
        except Exception as exc:
            self._fail(run, exc)
            raise

        self._pause(run, reason="cancelled")
        return CommandResult(
            success=True,
            message=(
                f"Search session {run.session.id} paused after "
                f"{run.stats.tweets_collected} tweets; resume with --resume {run.session.id}"
            ),
            data=run.stats.model_dump(),
        )

    async def _complete(self, run: SearchRun) -> CommandResult:
        stats = run.stats
        session_id = run.session.id
        self._sessions.update_session(
            session_id,
            **self._counters(run),
            status=SessionStatus.COMPLETED,
            completed_at=utcnow(),
        )
        if run.topic_id is not None:
            self._sessions.update_topic_stats(run.topic_id, run.new_tweets)

        if run.embed and run.new_tweets > 0:
            stats.embeddings_generated = await self._embed(session_id)
            if stats.embeddings_generated:
                self._sessions.update_session(session_id, embeddings_generated=True)

        stats.variant_breakdown = self._records.variant_breakdown(session_id)
        self._finish_job(run, True)
        logger.info("Session %d completed: %s", session_id, stats.model_dump(exclude={"variant_breakdown"}))
        return self._format_result(stats, new_tweets=run.new_tweets)

    async def _embed(self, session_id: int) -> bool:
        if self._embedder is None:
            logger.warning("Embedding requested but no embedder is configured; skipping.")
            return False
        embedder = self._embedder
        logger.info("Generating embeddings for session %d tweets", session_id)
        try:
            written = await with_retry(
                lambda: embedder(session_id), operation_name="embedding", sleep=self._sleep
            )
        except Exception:
            logger.exception("Embedding failed for session %d", session_id)
            return False
        logger.info("Embedded %d tweets from session %d", written, session_id)
        return True

    def _pause(self, run: SearchRun, *, reason: str) -> None:
        logger.info("Session %d paused (%s)", run.session.id, reason)
        try:
            self._sessions.update_session(
                run.session.id,
                **self._counters(run),
                cursor=run.cursor.encode(),
                last_tweet_id=run.last_tweet_id or "",
                status=SessionStatus.PAUSED,
            )
        except Exception:
            logger.warning("Failed to save paused state for session %d", run.session.id, exc_info=True)

    def _fail(self, run: SearchRun, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__
        logger.error("Session %d failed: %s", run.session.id, message)
        updates: dict[str, object] = {
            **self._counters(run),
            "status": SessionStatus.FAILED,
            "completed_at": utcnow(),
            "error_message": message,
        }
        if run.last_tweet_id is not None:
            updates.update(cursor=run.cursor.encode(), last_tweet_id=run.last_tweet_id)
        try:
            self._sessions.update_session(run.session.id, **updates)
        except Exception:
            logger.warning("Failed to record failure for session %d", run.session.id, exc_info=True)
        self._finish_job(run, False, message)

    # ── execution loop ──────────────────────────────────────────────────

    async def _execute(self, run: SearchRun) -> bool:
        """Run every remaining sub-query. False if the job was cancelled."""
        start = run.cursor.query_index
        for index in range(start, len(run.queries)):
            if run.target_reached:
                break
            if run.job and run.job.is_cancelled():
                return False
            page_token = run.cursor.page_token if index == start else None
            run.cursor = SessionCursor(query_index=index, page_token=page_token)
            if len(run.queries) > 1:
                logger.info("Query %d/%d: %s", index + 1, len(run.queries), run.queries[index][:80])

            await self._run_query(run, index)
            if run.cancelled:
                return False
        return True

    async def _run_query(self, run: SearchRun, index: int) -> None:
        """Iterate one sub-query, re-opening it at the current page after failures."""
        assert self._source is not None
        query = run.queries[index]
        rate_limit_waits = 0
        failures = 0

        while True:
            try:
                items = self._source.search(
                    query,
                    self._page_size,
                    run.mode,
                    run.cursor.page_token,
                    date_range=run.date_range,
                )
                async with aclosing(items):  # type: ignore[type-var]
                    async for item in items:
                        rate_limit_waits = failures = 0
                        if run.job and run.job.is_cancelled():
                            run.cancelled = True
                            return
                        run.cursor.page_token = item.page_token
                        self._process_item(run, item)
                        if run.target_reached:
                            return
                return
            except Exception as exc:
                classification = classify_error(exc)
                if not classification.should_retry:
                    raise
                if classification.type is ErrorType.RATE_LIMIT:
                    rate_limit_waits += 1
                    if rate_limit_waits > self._rate_limit_max_retries:
                        raise
                    delay = min(classification.suggested_delay or 60.0, self._rate_limit_max_wait)
                    logger.warning(
                        "Rate limited on query %d/%d; waiting %s for reset",
                        index + 1,
                        len(run.queries),
                        format_delay(delay),
                    )
                else:
                    failures += 1
                    if failures >= self._query_max_attempts:
                        raise
                    delay = compute_delay(
                        failures - 1,
                        classification.suggested_delay or 2.0,
                        self._rate_limit_max_wait,
                    )
                    logger.warning(
                        "Query %d/%d failed (attempt %d/%d): %s Waiting %s",
                        index + 1,
                        len(run.queries),
                        failures,
                        self._query_max_attempts,
                        classification.friendly_message,
                        format_delay(delay),
                    )
                self._report(run, classification.friendly_message)
                await self._sleep(delay)

    def _process_item(self, run: SearchRun, item: TweetItem) -> None:
        if item.tweet_id:
            if run.resume_after is not None and item.tweet_id <= run.resume_after:
                return
            if item.tweet_id in run.seen:
                # Re-yielded after the query was re-opened at the same page.
                return

        run.stats.total_processed += 1
        self._report(run)
        try:
            self._store_item(run, item)
        except Exception:
            logger.exception("Failed to process tweet %s", item.tweet_id or "<no id>")
        finally:
            if item.tweet_id:
                run.seen.add(item.tweet_id)
                run.last_tweet_id = item.tweet_id
            if run.stats.total_processed % self._checkpoint_every == 0:
                self._checkpoint(run)

    def _store_item(self, run: SearchRun, item: TweetItem) -> None:
        stats = run.stats
        if not item.available:
            logger.debug("Skipping unavailable tweet %r", item.tweet_id)
            return

        if self._records.tweet_exists(item.tweet_id):
            stats.duplicates_skipped += 1
            return

        user_id, created = self._records.upsert_user(
            item.author_username or "unknown", item.author_name
        )
        if created:
            stats.users_created += 1

        if not self._records.insert_tweet(item, user_id):
            # Another writer stored it between the existence check and now.
            stats.duplicates_skipped += 1
            return

        variant = match_variant(item.text, run.variants) or run.variants[0]
        if not self._records.record_origin(item.tweet_id, run.session.id, variant):
            logger.debug("Tweet %s already attributed to another session", item.tweet_id)

        stats.tweets_collected += 1
        run.new_tweets += 1

    def _checkpoint(self, run: SearchRun) -> None:
        if run.last_tweet_id is None:
            return
        try:
            self._sessions.update_session(
                run.session.id,
                **self._counters(run),
                cursor=run.cursor.encode(),
                last_tweet_id=run.last_tweet_id,
            )
        except Exception:
            logger.warning("Checkpoint failed for session %d", run.session.id, exc_info=True)

    # ── helpers ─────────────────────────────────────────────────────────

    def _report(self, run: SearchRun, note: str | None = None) -> None:
        if run.job is None:
            return
        stats = run.stats
        message = note or (
            f"{stats.total_processed} processed ({stats.tweets_collected} new, "
            f"{stats.duplicates_skipped} duplicates)"
        )
        run.job.update_progress(stats.tweets_collected, run.max_tweets, message)

    def _create_job(
        self, session: SearchSession, variants: list[str], resumed: bool = False
    ) -> JobContext | None:
        if self._tracker is None:
            return None
        return self._tracker.create_job(
            JobType.SEARCH,
            {"session_id": session.id, "variants": variants, "resumed": resumed},
        )

    def _finish_job(self, run: SearchRun, success: bool, error_message: str | None = None) -> None:
        # No-op for jobs already cancelled through the tracker.
        if self._tracker is not None and run.job is not None:
            self._tracker.complete_job(run.job.job_id, success, error_message)

    def _is_tracked(self, session_id: int) -> bool:
        if self._tracker is None:
            return False
        return any(
            job.type is JobType.SEARCH
            and job.metadata.get("session_id") == session_id
            and self._tracker.owns(job.id)
            for job in self._tracker.get_active_jobs()
        )

    def _resolve_topic(self, name: str, variants: list[str]) -> SearchTopic:
        topic = self._sessions.get_topic_by_name(name)
        if topic is None:
            try:
                topic = self._sessions.create_topic(name, variants)
                logger.info('Created new topic: "%s"', name)
                return topic
            except ConflictError:
                # Created concurrently; fall through to the variant check.
                topic = self._sessions.get_topic_by_name(name)
                if topic is None:
                    raise
        if topic.variants != variants:
            raise ConflictError(
                f'Topic "{name}" already exists with variants {topic.variants}. '
                "Topics are immutable; choose a different --name."
            )
        logger.info('Using existing topic: "%s"', name)
        return topic

    def _require_source(self) -> None:
        if self._source is None:
            raise ValidationError("No search source configured (set X_BEARER_TOKEN)")

    @staticmethod
    def _counters(run: SearchRun) -> dict[str, int]:
        return {
            "tweets_collected": run.stats.tweets_collected,
            "total_processed": run.stats.total_processed,
            "duplicates_skipped": run.stats.duplicates_skipped,
            "users_created": run.stats.users_created,
        }

    @staticmethod
    def _format_result(stats: SearchStats, *, new_tweets: int) -> CommandResult:
        data = stats.model_dump()
        if new_tweets == 0:
            return CommandResult(
                success=True,
                message=(
                    f"No new tweets found ({stats.total_processed} examined, "
                    f"{stats.duplicates_skipped} duplicates). "
                    "Try broader variants or a different date range.\n\n" + _NO_RESULTS_HINT
                ),
                data=data,
            )
        return CommandResult(
            success=True,
            message=(
                f"[ok] Search complete: {stats.tweets_collected} new tweets, "
                f"{stats.duplicates_skipped} duplicates, {stats.users_created} users created "
                f"(session {stats.session_id})"
            ),
            data=data,
        )
