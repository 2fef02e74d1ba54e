"""
Alignment contract tests: verify DB schema aligns with model contracts and pipeline.

These tests ensure that the database constraints and model definitions are
consistent across layers (models, schema, pipeline).
"""

import sqlite3
from pathlib import Path

import pytest

from core.models import ArticleVersion, CheckpointStatus, Stage
from core.pipeline import STAGE_ORDER


MIGRATION_PATH = Path(__file__).parent.parent.parent / "storage" / "migrations" / "0001_init.sql"


@pytest.fixture
def migration_sql():
    """Load the migration SQL."""
    return MIGRATION_PATH.read_text()


@pytest.fixture
def columns(store):
    """Column names per table in a freshly migrated store."""
    with sqlite3.connect(store.db_path) as connection:
        tables = [row[0] for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")]
        return {
            table: {row[1] for row in connection.execute(f"PRAGMA table_info({table})")}
            for table in tables
        }


@pytest.mark.contract
class TestDBSchemaAlignment:
    """Verify that SQLite schema enforces required constraints."""

    def test_version_identity_is_unique_per_article(self, migration_sql):
        assert "UNIQUE (article_id, version_number)" in migration_sql
        assert "CHECK (version_number >= 1)" in migration_sql

    def test_one_latest_row_per_article(self, migration_sql):
        assert "CREATE UNIQUE INDEX IF NOT EXISTS idx_article_versions_one_latest" in migration_sql
        assert "WHERE is_latest = 1" in migration_sql

    def test_publish_flags_are_ordered(self, migration_sql):
        """An uploaded bundle must have been generated; an exported row must name its batch."""
        assert "CHECK (manifest_uploaded = 0 OR manifest_generated = 1)" in migration_sql
        assert "CHECK (exported = 0 OR export_batch IS NOT NULL)" in migration_sql

    def test_article_versions_columns_cover_model(self, columns):
        """Every stored model field has a column (composite fields as *_json)."""
        composite = {"authors", "keywords", "collections", "attachments"}
        expected = {
            f"{name}_json" if name in composite else name
            for name in ArticleVersion.model_fields
        }
        # Candidate timestamps are stored under source_* names.
        assert expected <= columns["article_versions"]

    def test_bookkeeping_tables_exist(self, columns):
        assert {"export_batches", "uploaded_files", "sync_checkpoints", "run_log"} <= set(columns)
        assert {"stage", "item_id", "status", "retry_count", "last_error", "updated_at"} <= columns["sync_checkpoints"]
        assert {"version_id", "path", "sha256", "content_identifier"} <= columns["uploaded_files"]


@pytest.mark.contract
class TestPipelineAlignment:
    """Stage and status enums line up with the pipeline and stored values."""

    def test_stage_order_covers_every_stage(self):
        assert list(STAGE_ORDER) == list(Stage)

    def test_checkpoint_status_values_are_lowercase(self):
        assert [status.value for status in CheckpointStatus] == ["succeeded", "failed", "skipped"]

    def test_migration_is_idempotent(self, store):
        """Opening a second store on the same file re-runs the migration safely."""
        reopened = type(store)(store.db_path)
        assert reopened.stats()["total_versions"] == 0
