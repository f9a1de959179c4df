"""Tests for the YAML topics file loader."""

from pathlib import Path

import pytest

from xsearch.errors import NotFoundError, ValidationError
from xsearch.topics import load_topics, topic_variants


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "topics.yaml"
    path.write_text(body, encoding="utf-8")
    return path


class TestLoadTopics:
    def test_lists_and_strings(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "topics:\n"
            "  frontier-ai:\n"
            "    - AGI\n"
            "    - GPT-5\n"
            '  chips: "NVDA, H100 , Blackwell"\n'
            "  empty: []\n",
        )
        assert load_topics(path) == {
            "frontier-ai": ["AGI", "GPT-5"],
            "chips": ["NVDA", "H100", "Blackwell"],
        }

    def test_empty_file(self, tmp_path: Path) -> None:
        assert load_topics(_write(tmp_path, "")) == {}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            load_topics(tmp_path / "nope.yaml")

    def test_bad_value(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            load_topics(_write(tmp_path, "topics:\n  bad: 3\n"))


class TestTopicVariants:
    def test_lookup(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "topics:\n  ai: [AGI]\n")
        assert topic_variants(path, "ai") == ["AGI"]
        with pytest.raises(NotFoundError):
            topic_variants(path, "other")
