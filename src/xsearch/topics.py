"""Load named search topics (variant lists) from a YAML file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from xsearch.errors import NotFoundError, ValidationError
from xsearch.query import parse_variants

logger = logging.getLogger(__name__)


def _coerce_variants(name: str, raw: Any) -> list[str]:
    # Either a YAML list or a single comma-separated string.
    if isinstance(raw, str):
        return parse_variants(raw)
    if isinstance(raw, list):
        return [str(v).strip() for v in raw if str(v).strip()]
    raise ValidationError(f"Topic '{name}' must be a list of variants or a string")


def load_topics(topics_path: Path) -> dict[str, list[str]]:
    """Parse a topics file and return topic-name → ordered variants.

    Expected layout::

        topics:
          frontier-ai:
            - AGI
            - GPT-5
            - foundation model
          chips: "NVDA, H100, Blackwell"
    """
    if not topics_path.exists():
        raise NotFoundError(f"Topics file not found: {topics_path}")

    with open(topics_path, encoding="utf-8") as fh:
        cfg: dict[str, Any] = yaml.safe_load(fh) or {}

    topics: dict[str, list[str]] = {}
    for name, raw in (cfg.get("topics") or {}).items():
        variants = _coerce_variants(name, raw)
        if not variants:
            logger.warning("Skipping empty topic: %s", name)
            continue
        topics[str(name)] = variants
        logger.debug("Topic [%s]: %s", name, variants)

    return topics


def topic_variants(topics_path: Path, name: str) -> list[str]:
    topics = load_topics(topics_path)
    if name not in topics:
        raise NotFoundError(f"Topic '{name}' not defined in {topics_path}")
    return topics[name]
