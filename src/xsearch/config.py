"""Centralised configuration loaded from environment variables and dotenv."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ── Paths ──────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[2]
DB_PATH: Path = Path(
    os.getenv("XSEARCH_DB_PATH", str(PROJECT_ROOT / "var" / "xsearch.sqlite3"))
)

# ── X API ──────────────────────────────────────────────────────────────────
X_BEARER_TOKEN: str = os.getenv("X_BEARER_TOKEN", "")
PAGE_SIZE: int = int(os.getenv("XSEARCH_PAGE_SIZE", "100"))
# Recent Search rejects queries longer than this (Basic tier).
QUERY_LENGTH_LIMIT = 500

# ── Search sessions ───────────────────────────────────────────────────────
DEFAULT_MAX_TWEETS: int = int(os.getenv("XSEARCH_DEFAULT_MAX_TWEETS", "100"))
CHECKPOINT_EVERY: int = int(os.getenv("XSEARCH_CHECKPOINT_EVERY", "50"))

# ── Rate limits / retries ─────────────────────────────────────────────────
RATE_LIMIT_MAX_WAIT: float = float(os.getenv("XSEARCH_RATE_LIMIT_MAX_WAIT", "900"))
RATE_LIMIT_MAX_RETRIES: int = int(os.getenv("XSEARCH_RATE_LIMIT_MAX_RETRIES", "5"))
QUERY_MAX_ATTEMPTS: int = int(os.getenv("XSEARCH_QUERY_MAX_ATTEMPTS", "3"))

# ── Job tracking ──────────────────────────────────────────────────────────
JOB_GRACE_PERIOD: float = float(os.getenv("XSEARCH_JOB_GRACE_PERIOD", "30"))
JOB_STALE_AFTER: float = float(os.getenv("XSEARCH_JOB_STALE_AFTER", str(60 * 60)))
JOB_RETENTION: float = float(os.getenv("XSEARCH_JOB_RETENTION", str(24 * 60 * 60)))

# ── Server / logging ──────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("XSEARCH_HOST", "127.0.0.1")
SERVER_PORT: int = int(os.getenv("XSEARCH_PORT", "8000"))
LOG_LEVEL: str = os.getenv("XSEARCH_LOG_LEVEL", "INFO")


def bearer_configured() -> bool:
    """True when an X API bearer token is available."""
    return bool(X_BEARER_TOKEN)
