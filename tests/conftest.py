"""
Shared pytest fixtures and configuration for article-archiver tests.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

import pytest

from core.config import ArchiverConfig
from core.models import ArticleCandidate
from fetcher.retry import NetworkGuard
from storage.sqlite import SQLiteVersionStore


# ============================================================================
# Fixtures: Configuration + Store
# ============================================================================

@pytest.fixture
def config(tmp_path: Path) -> ArchiverConfig:
    """Config rooted in tmp_path with no real waiting anywhere."""
    return ArchiverConfig(
        db_path=tmp_path / "sqlite" / "archive.db",
        export_dir=tmp_path / "parquet",
        manifests_dir=tmp_path / "manifests",
        attachments_dir=tmp_path / "attachments",
        worker_count=2,
        rate_per_second=1000.0,
        rate_burst=100,
        retry_max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=0.0,
        checkpoint_backoff_seconds=0.0,
    )


@pytest.fixture
def store(config: ArchiverConfig) -> SQLiteVersionStore:
    """Fresh version store per test."""
    return SQLiteVersionStore(config.db_path)


@pytest.fixture
def guard(config: ArchiverConfig) -> NetworkGuard:
    """Network guard that never sleeps."""
    return NetworkGuard.from_config(config, name="test", sleep_fn=lambda _: None)


# ============================================================================
# Fixtures: Records
# ============================================================================

def _content(text: str) -> dict[str, Any]:
    return {
        "type": "doc",
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
    }


@pytest.fixture
def make_record() -> Callable[..., dict[str, Any]]:
    """Factory for raw upstream records; keyword overrides replace fields."""

    def _make(article_id: str = "art-001", **overrides: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": article_id,
            "slug": f"slug-{article_id}",
            "title": "Policing and Place",
            "abstract": "A study of place-based policing.",
            "doi": "10.1234/example.001",
            "license": "CC-BY-4.0",
            "url": f"https://example.org/pub/{article_id}",
            "authors": [{"name": "Jane Doe", "orcid": "0000-0001-2345-6789"}],
            "keywords": ["policing"],
            "collections": ["criminology"],
            "attachments": [],
            "content_document": _content("Body text."),
            "created_at": "2025-01-01T00:00:00+00:00",
            "updated_at": "2025-02-01T00:00:00+00:00",
            "published_at": "2025-01-15T00:00:00+00:00",
        }
        record.update(overrides)
        return record

    return _make


@pytest.fixture
def make_candidate(make_record) -> Callable[..., ArticleCandidate]:
    """Factory for validated candidates."""

    def _make(article_id: str = "art-001", **overrides: Any) -> ArticleCandidate:
        return ArticleCandidate.from_record(make_record(article_id, **overrides))

    return _make


@pytest.fixture
def content_document() -> Callable[[str], dict[str, Any]]:
    return _content


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


# ============================================================================
# Helpers
# ============================================================================

@pytest.fixture
def json_lines() -> Callable[[str], list[dict[str, Any]]]:
    """Decode structured log lines emitted to stdout."""

    def _parse(captured: str) -> list[dict[str, Any]]:
        return [json.loads(line) for line in captured.splitlines() if line.strip()]

    return _parse


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "contract: contract schema compliance tests")
    config.addinivalue_line("markers", "integration: end-to-end integration tests")
    config.addinivalue_line("markers", "unit: unit tests")
