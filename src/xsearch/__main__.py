"""CLI entry-point: ``python -m xsearch search ...`` / ``python -m xsearch serve``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from xsearch import config
from xsearch.engine import SearchSessionEngine
from xsearch.errors import XSearchError, friendly_message
from xsearch.job_store import SqliteJobStore
from xsearch.jobs import JobTrackingService
from xsearch.models import CommandResult, Job, JobStatus, JobType, SearchMode, SearchRequest
from xsearch.query import calculate_date_range, parse_duration, parse_variants
from xsearch.session_store import SessionStore
from xsearch.store import TweetStore
from xsearch.topics import topic_variants
from xsearch.x_client import XClient

logger = logging.getLogger(__name__)


def _setup_logging(quiet: bool = False) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else config.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _print_progress(jobs: list[Job]) -> None:
    """Render a single live progress line for the running search job."""
    for job in jobs:
        if job.type is JobType.SEARCH and job.status is JobStatus.RUNNING:
            p = job.progress
            line = f"[search] {p.current}/{p.total} tweets - {p.message}"
            sys.stderr.write(f"\r{line[:100]:<100}")
            sys.stderr.flush()


def _emit(result: CommandResult, as_json: bool) -> None:
    if as_json:
        print(result.model_dump_json(indent=2))
    else:
        print(result.message)


def _build_request(args: argparse.Namespace) -> SearchRequest:
    variants = parse_variants(args.variants or "")
    if not variants and args.name and args.topics_file:
        variants = topic_variants(Path(args.topics_file), args.name)
    return SearchRequest(
        variants=variants,
        name=args.name,
        max_tweets=args.max,
        days=args.days,
        since=args.since,
        until=args.until,
        mode=SearchMode(args.mode),
        embed=args.embed,
    )


async def _search(args: argparse.Namespace, request: SearchRequest) -> CommandResult:
    tracker = JobTrackingService(SqliteJobStore(config.DB_PATH))
    await tracker.initialize()
    client = XClient(bearer_token=config.X_BEARER_TOKEN)
    engine = SearchSessionEngine(
        client,
        TweetStore(config.DB_PATH),
        SessionStore(config.DB_PATH),
        tracker,
    )

    unsubscribe = (lambda: None) if args.json else tracker.subscribe(_print_progress)
    try:
        if args.resume is not None:
            return await engine.resume_search(args.resume)
        return await engine.start_search(request)
    finally:
        unsubscribe()
        if not args.json:
            # Clear the progress line
            sys.stderr.write("\r" + " " * 100 + "\r")
        tracker.shutdown()
        client.close()


def _cleanup(args: argparse.Namespace) -> CommandResult:
    if not args.older_than:
        return CommandResult(
            success=False, message="Please specify --older-than (e.g., --older-than 30d)"
        )
    days = parse_duration(args.older_than)
    engine = SearchSessionEngine(None, TweetStore(config.DB_PATH), SessionStore(config.DB_PATH))
    return engine.cleanup(days)


def run_search_command(args: argparse.Namespace) -> int:
    """Execute ``search``; returns the process exit code."""
    _setup_logging(quiet=args.json)
    try:
        if args.cleanup:
            result = _cleanup(args)
        else:
            # Reject conflicting date flags before anything touches the network.
            calculate_date_range(args.days, args.since, args.until)
            request = _build_request(args)
            if args.dry_run:
                result = SearchSessionEngine.dry_run(request)
            else:
                result = asyncio.run(_search(args, request))
    except XSearchError as exc:
        result = CommandResult(success=False, message=str(exc), error=type(exc).__name__)
    except KeyboardInterrupt:
        logger.warning("Interrupted; the session was paused and can be resumed with --resume")
        return 130
    except Exception as exc:
        logger.exception("Search failed")
        result = CommandResult(success=False, message=friendly_message(exc), error=str(exc))

    _emit(result, args.json)
    return 0 if result.success else 1


def run_server(host: str, port: int) -> None:
    import uvicorn

    from xsearch.api import create_app

    _setup_logging()
    tracker = JobTrackingService(SqliteJobStore(config.DB_PATH))
    client = XClient(config.X_BEARER_TOKEN) if config.bearer_configured() else None
    if client is None:
        logger.warning("X_BEARER_TOKEN not set; searches cannot be launched from the API.")
    engine = SearchSessionEngine(
        client, TweetStore(config.DB_PATH), SessionStore(config.DB_PATH), tracker
    )
    uvicorn.run(create_app(tracker, engine), host=host, port=port)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="xsearch",
        description="Resumable, rate-limit aware ingestion from X Recent Search.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── search ────────────────────────────────────────────────────────
    search = sub.add_parser("search", help="Run, resume or clean up search sessions.")
    search.add_argument(
        "variants",
        nargs="?",
        help='Comma-separated search variants, e.g. "AGI, GPT-5, foundation model".',
    )
    search.add_argument("--name", help="Save/reuse the variants as a named topic.")
    search.add_argument(
        "--topics-file",
        help="YAML file of named topics; used with --name when no variants are given.",
    )
    search.add_argument(
        "--max",
        type=int,
        default=config.DEFAULT_MAX_TWEETS,
        help=f"Stop after this many new tweets (default: {config.DEFAULT_MAX_TWEETS}).",
    )
    search.add_argument("--days", type=int, help="Search the last N days.")
    search.add_argument("--since", help="Start date, YYYY-MM-DD.")
    search.add_argument("--until", help="End date, YYYY-MM-DD.")
    search.add_argument(
        "--mode",
        choices=[m.value for m in SearchMode],
        default=SearchMode.LATEST.value,
        help="latest (recency) or top (relevancy).",
    )
    search.add_argument("--embed", action="store_true", help="Embed the new tweets afterwards.")
    search.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the exact queries without calling X or touching the database.",
    )
    search.add_argument(
        "--json", action="store_true", help="Print a single JSON result object."
    )
    search.add_argument("--resume", type=int, metavar="ID", help="Resume a paused session.")
    search.add_argument("--cleanup", action="store_true", help="Delete old sessions.")
    search.add_argument("--older-than", help='Age for --cleanup, e.g. "30d".')

    # ── serve ─────────────────────────────────────────────────────────
    serve = sub.add_parser("serve", help="Serve the job status API.")
    serve.add_argument("--host", default=config.SERVER_HOST)
    serve.add_argument("--port", type=int, default=config.SERVER_PORT)

    args = parser.parse_args(argv)

    if args.command == "search":
        sys.exit(run_search_command(args))
    elif args.command == "serve":
        run_server(args.host, args.port)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
