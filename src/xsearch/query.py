"""Build X search query strings from free-text variant lists."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta

from xsearch.errors import ValidationError
from xsearch.models import DateRange

logger = logging.getLogger(__name__)

# Appended to every query; retweets only duplicate the original text.
EXCLUSION_FILTER = "-is:retweet"

DEFAULT_MAX_LENGTH = 450
# Reserved for the exclusion filter and since:/until: bounds.
_QUERY_OVERHEAD = 100

_DURATION_RE = re.compile(r"^(\d+)d$")
_DATE_FMT = "%Y-%m-%d"


def parse_variants(text: str) -> list[str]:
    """Split comma-separated variants.

    ``"AGI, GPT-5, foundation models"`` → ``["AGI", "GPT-5", "foundation models"]``
    """
    return [v.strip() for v in text.split(",") if v.strip()]


def build_query(variants: list[str], date_range: DateRange | None = None) -> str:
    """``["AGI", "GPT-5"]`` → ``'"AGI" OR "GPT-5" -is:retweet'``."""
    query = " OR ".join(f'"{v}"' for v in variants)
    if date_range is not None:
        query += (
            f" since:{_format_date_utc(date_range.start)}"
            f" until:{_format_date_utc(date_range.end)}"
        )
    return f"{query} {EXCLUSION_FILTER}"


def split_query(
    variants: list[str], max_length: int = DEFAULT_MAX_LENGTH
) -> list[list[str]]:
    """Greedily pack *variants* into ordered groups that fit one query each.

    A variant too long for an empty group still gets a group of its own.
    """
    budget = max_length - _QUERY_OVERHEAD
    groups: list[list[str]] = []
    current: list[str] = []
    current_length = 0

    for variant in variants:
        addition = len(f'"{variant}" OR ')
        if current and current_length + addition > budget:
            groups.append(current)
            current = []
            current_length = 0
        current.append(variant)
        current_length += addition

    if current:
        groups.append(current)
    if len(groups) > 1:
        logger.debug("Split %d variants into %d queries", len(variants), len(groups))
    return groups


def build_queries(
    variants: list[str], date_range: DateRange | None = None
) -> list[str]:
    """Split and build in one step; the result is stable for equal inputs."""
    return [build_query(group, date_range) for group in split_query(variants)]


def match_variant(text: str, variants: list[str]) -> str | None:
    """Return the longest variant contained in *text* (case-insensitive)."""
    lower = text.lower()
    # sorted() is stable, so equal lengths keep their input order.
    for variant in sorted(variants, key=len, reverse=True):
        if variant.lower() in lower:
            return variant
    return None


def calculate_date_range(
    days: int | None = None,
    since: str | None = None,
    until: str | None = None,
    now: datetime | None = None,
) -> DateRange | None:
    """Resolve ``--days`` / ``--since`` / ``--until`` into a UTC range."""
    if days is not None and (since or until):
        raise ValidationError(
            "Cannot use --days with --since/--until. Choose one date method."
        )

    now = now or datetime.now(UTC)
    if days is not None:
        if days <= 0:
            raise ValidationError("--days must be greater than 0")
        return DateRange(start=now - timedelta(days=days), end=now)

    if since or until:
        start = _parse_date(since, "--since") if since else datetime.fromtimestamp(0, UTC)
        end = _parse_date(until, "--until") if until else now
        if start > end:
            raise ValidationError(f"--since {since} is after --until {until}")
        return DateRange(start=start, end=end)

    return None


def parse_duration(duration: str) -> int:
    """``"30d"`` → ``30``."""
    match = _DURATION_RE.match(duration.strip())
    if not match:
        raise ValidationError(
            'Invalid duration format. Use format like "30d" for 30 days.'
        )
    return int(match.group(1))


def format_date_range(date_range: DateRange) -> str:
    return f"{_format_display(date_range.start)} to {_format_display(date_range.end)}"


def _format_display(dt: datetime) -> str:
    return f"{dt:%b} {dt.day}, {dt.year}"


def _format_date_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime(_DATE_FMT)


def _parse_date(value: str, flag: str) -> datetime:
    try:
        return datetime.strptime(value, _DATE_FMT).replace(tzinfo=UTC)
    except ValueError:
        raise ValidationError(f"{flag} must be a date like 2024-01-31, got {value!r}") from None
