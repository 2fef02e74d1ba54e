"""Integration tests for change detection, versioning and store-level guards."""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest

from core.errors import ConflictError, ValidationError
from core.models import ArticleCandidate, AttachmentRef, BundleFile, ExportBatch, UpsertAction
from storage.sqlite import KeyedLocks, SQLiteVersionStore


def _latest_counts(store: SQLiteVersionStore) -> dict[str, int]:
    with sqlite3.connect(store.db_path) as connection:
        rows = connection.execute(
            "SELECT article_id, SUM(is_latest) FROM article_versions GROUP BY article_id"
        ).fetchall()
    return {article_id: int(total) for article_id, total in rows}


def _assert_history_invariants(store: SQLiteVersionStore, article_id: str) -> None:
    versions = store.list_versions(article_id)
    assert [v.version_number for v in versions] == list(range(1, len(versions) + 1))
    assert sum(1 for v in versions if v.is_latest) == 1
    assert versions[-1].is_latest is True


@pytest.mark.integration
def test_first_ingest_inserts_version_one(store, make_candidate):
    result = store.upsert(make_candidate())

    assert result.action == UpsertAction.INSERTED
    assert result.version_number == 1
    assert result.version_id == "art-001_v1"

    latest = store.get_latest("art-001")
    assert latest is not None
    assert latest.is_latest is True
    assert latest.content_hash is not None
    assert latest.authors[0].orcid == "0000-0001-2345-6789"


@pytest.mark.integration
def test_identical_candidate_is_unchanged(store, make_candidate):
    store.upsert(make_candidate())
    result = store.upsert(make_candidate())

    assert result.action == UpsertAction.UNCHANGED
    assert result.version_number == 1
    assert len(store.list_versions("art-001")) == 1


@pytest.mark.integration
def test_later_timestamp_creates_new_version(store, make_candidate):
    store.upsert(make_candidate())
    result = store.upsert(
        make_candidate(abstract="Revised abstract.", updated_at="2025-03-01T00:00:00+00:00")
    )

    assert result.action == UpsertAction.NEW_VERSION
    assert result.version_number == 2

    v1 = store.get_version("art-001", 1)
    v2 = store.get_version("art-001", 2)
    assert v1 is not None and v1.is_latest is False
    assert v1.abstract == "A study of place-based policing."
    assert v2 is not None and v2.is_latest is True
    assert v2.abstract == "Revised abstract."
    _assert_history_invariants(store, "art-001")


@pytest.mark.integration
def test_content_change_without_timestamp_bump_creates_new_version(store, make_candidate, content_document):
    store.upsert(make_candidate())
    result = store.upsert(make_candidate(content_document=content_document("Rewritten body.")))

    assert result.action == UpsertAction.NEW_VERSION
    assert store.get_latest("art-001").content_document == content_document("Rewritten body.")


@pytest.mark.integration
def test_stale_candidate_never_creates_a_version(store, make_candidate, content_document):
    store.upsert(make_candidate())
    result = store.upsert(
        make_candidate(
            abstract="Old.",
            content_document=content_document("Older body."),
            updated_at="2024-12-01T00:00:00+00:00",
        )
    )

    assert result.action == UpsertAction.UNCHANGED
    latest = store.get_latest("art-001")
    assert latest.version_number == 1
    assert latest.abstract == "A study of place-based policing."


@pytest.mark.integration
def test_backfill_enriches_latest_in_place(store, make_candidate, content_document):
    store.upsert(make_candidate(abstract="Short.", content_document=None, keywords=[]))
    result = store.upsert(
        make_candidate(
            abstract="A much longer abstract with the full details.",
            content_document=content_document("Scraped body."),
            keywords=["policing", "place"],
        )
    )

    assert result.action == UpsertAction.ENRICHED
    assert result.version_number == 1
    latest = store.get_latest("art-001")
    assert latest.abstract == "A much longer abstract with the full details."
    assert latest.keywords == ["policing", "place"]
    assert latest.content_document == content_document("Scraped body.")
    assert latest.content_hash is not None
    assert len(store.list_versions("art-001")) == 1


@pytest.mark.integration
def test_sparser_values_never_replace_richer_ones(store, make_candidate):
    store.upsert(
        make_candidate(
            keywords=["a", "b", "c"],
            authors=[{"name": "Jane Doe", "orcid": "0000-0001", "affiliation": "Uni"}],
        )
    )
    result = store.upsert(
        make_candidate(
            abstract="Tiny.",
            keywords=["a"],
            authors=[{"name": "Jane Doe"}],
            doi=None,
        )
    )

    assert result.action == UpsertAction.UNCHANGED
    latest = store.get_latest("art-001")
    assert latest.abstract == "A study of place-based policing."
    assert latest.keywords == ["a", "b", "c"]
    assert latest.authors[0].affiliation == "Uni"
    assert latest.doi == "10.1234/example.001"


@pytest.mark.integration
def test_enrichment_unions_attachments_and_keeps_local_state(store, make_candidate, tmp_path):
    pdf = {"filename": "paper.pdf", "source_url": "https://files.example.org/paper.pdf"}
    store.upsert(make_candidate(attachments=[pdf]))
    store.record_attachment_download(
        "art-001_v1",
        AttachmentRef(filename="paper.pdf", local_path=str(tmp_path / "paper.pdf"), size=10, sha256="ab" * 32),
    )

    result = store.upsert(
        make_candidate(
            attachments=[
                {**pdf, "content_type": "application/pdf"},
                {"filename": "data.csv", "source_url": "https://files.example.org/data.csv"},
            ]
        )
    )

    assert result.action == UpsertAction.ENRICHED
    refs = {ref.filename: ref for ref in store.get_latest("art-001").attachments}
    assert refs["paper.pdf"].local_path == str(tmp_path / "paper.pdf")
    assert refs["paper.pdf"].content_type == "application/pdf"
    assert refs["data.csv"].local_path is None


@pytest.mark.integration
def test_many_versions_keep_one_latest_and_contiguous_numbers(store, make_candidate):
    base = datetime(2025, 2, 1, tzinfo=UTC)
    for step in range(5):
        store.upsert(
            make_candidate(abstract=f"Revision {step}", updated_at=(base + timedelta(days=step)).isoformat())
        )
    store.upsert(make_candidate("art-002"))

    assert _latest_counts(store) == {"art-001": 1, "art-002": 1}
    _assert_history_invariants(store, "art-001")
    assert store.get_latest("art-001").version_number == 5


@pytest.mark.integration
def test_concurrent_upserts_for_one_article_are_serialized(store, make_candidate):
    base = datetime(2025, 2, 1, tzinfo=UTC)
    candidates = [
        make_candidate(abstract=f"Revision {step}", updated_at=(base + timedelta(days=step)).isoformat())
        for step in range(8)
    ]

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(store.upsert, candidates))

    allowed = {UpsertAction.INSERTED, UpsertAction.NEW_VERSION, UpsertAction.UNCHANGED}
    assert all(result.action in allowed for result in results)
    _assert_history_invariants(store, "art-001")
    assert store.get_latest("art-001").source_updated_at == base + timedelta(days=7)


@pytest.mark.integration
def test_article_locks_are_dropped_once_released(store, make_candidate):
    locks = KeyedLocks()
    with locks.hold("art-001"):
        with locks.hold("art-001"):
            assert len(locks) == 1
        with locks.hold("art-002"):
            assert len(locks) == 2
    assert len(locks) == 0

    with ThreadPoolExecutor(max_workers=4) as executor:
        list(executor.map(store.upsert, [make_candidate(f"art-{index:03d}") for index in range(50)]))
    assert len(store._locks) == 0
    assert len(_latest_counts(store)) == 50


@pytest.mark.integration
def test_record_without_identifier_is_validation_error():
    with pytest.raises(ValidationError):
        ArticleCandidate.from_record({"title": "No id"})
    with pytest.raises(ValidationError):
        ArticleCandidate.from_record({"id": "x", "authors": "not-a-list"})
    with pytest.raises(ValidationError):
        ArticleCandidate.from_record(["not", "a", "mapping"])


@pytest.mark.integration
def test_partial_unique_index_rejects_second_latest_row(store, make_candidate):
    store.upsert(make_candidate())
    now = datetime.now(UTC).isoformat()
    with sqlite3.connect(store.db_path) as connection:
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(
                """
                INSERT INTO article_versions (id, article_id, version_number, is_latest, created_at, updated_at)
                VALUES ('art-001_v9', 'art-001', 9, 1, ?, ?)
                """,
                (now, now),
            )


@pytest.mark.integration
def test_publish_state_only_moves_forward(store, make_candidate):
    store.upsert(make_candidate())
    store.upsert(make_candidate("no-content", content_document=None))

    with pytest.raises(ValidationError):
        store.mark_manifest_uploaded("art-001_v1", "id-1")
    with pytest.raises(ValidationError):
        store.mark_manifest_generated("no-content_v1", "/tmp/bundle")

    store.mark_manifest_generated("art-001_v1", "/tmp/bundle")
    store.mark_manifest_uploaded("art-001_v1", "id-1")
    with pytest.raises(ConflictError):
        store.mark_manifest_uploaded("art-001_v1", "id-2")
    assert store.get_latest("art-001").content_identifier == "id-1"


@pytest.mark.integration
def test_export_batch_assignment_is_write_once(store, make_candidate, tmp_path):
    store.upsert(make_candidate())
    now = datetime.now(UTC)
    first = ExportBatch(
        batch_name="2025-03-01_batch-001",
        export_date=now,
        version_ids=["art-001_v1"],
        article_count=1,
        file_path=str(tmp_path / "a.parquet"),
    )
    store.record_export_batch(first)

    second = first.model_copy(update={"batch_name": "2025-03-01_batch-002"})
    with pytest.raises(ConflictError):
        store.record_export_batch(second)

    assert [batch.batch_name for batch in store.list_export_batches()] == ["2025-03-01_batch-001"]
    assert store.get_latest("art-001").export_batch == "2025-03-01_batch-001"
    assert store.next_batch_sequence("2025-03-01") == 2

    store.set_batch_remote_identifier("2025-03-01_batch-001", "remote-1")
    with pytest.raises(ConflictError):
        store.set_batch_remote_identifier("2025-03-01_batch-001", "remote-2")


@pytest.mark.integration
def test_reset_publish_state_keeps_history(store, make_candidate):
    store.upsert(make_candidate())
    store.mark_manifest_generated("art-001_v1", "/tmp/bundle")
    store.save_uploaded_file(
        "art-001_v1",
        BundleFile(path="metadata.json", size=3, sha256="00" * 32, content_type="application/json"),
        "file-id",
    )
    store.mark_manifest_uploaded("art-001_v1", "manifest-id")

    assert store.reset_publish_state(article_id="art-001") == 1

    latest = store.get_latest("art-001")
    assert latest.manifest_uploaded is False
    assert latest.content_identifier is None
    assert latest.manifest_generated is True
    assert store.get_uploaded_files("art-001_v1") == {}
    assert len(store.list_versions("art-001")) == 1
