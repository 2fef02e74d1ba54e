"""Integration tests for deterministic publication bundles."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from core.errors import DurabilityError, ValidationError
from core.models import AttachmentRef, CheckpointStatus, Stage
from manifest.builder import ManifestBuilder, build_metadata, read_bundle


@pytest.fixture
def builder(store, config):
    return ManifestBuilder(store, config, run_id="run-manifest")


def _snapshot(directory: Path) -> dict[str, bytes]:
    return {
        path.relative_to(directory).as_posix(): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def version_with_attachments(store, make_candidate, tmp_path):
    store.upsert(
        make_candidate(
            attachments=[
                {"filename": "paper.pdf", "source_url": "https://files.example.org/paper.pdf"},
                {"filename": "data.csv", "source_url": "https://files.example.org/data.csv"},
            ]
        )
    )
    downloaded = tmp_path / "downloads" / "paper.pdf"
    downloaded.parent.mkdir(parents=True)
    downloaded.write_bytes(b"%PDF-1.7 fake")
    store.record_attachment_download(
        "art-001_v1",
        AttachmentRef(filename="paper.pdf", local_path=str(downloaded), size=13, sha256="cd" * 32),
    )
    return store.get_latest("art-001")


@pytest.mark.integration
def test_build_writes_bundle_layout(builder, version_with_attachments, config, capsys, json_lines):
    bundle = builder.build(version_with_attachments)

    directory = config.manifests_dir / "art-001" / "v1"
    assert bundle.directory == str(directory)
    assert [item.path for item in bundle.files] == ["attachments/paper.pdf", "content.json", "metadata.json"]
    assert bundle.missing_attachments == ["data.csv"]
    assert (directory / "attachments" / "paper.pdf").read_bytes() == b"%PDF-1.7 fake"

    content = json.loads((directory / "content.json").read_text(encoding="utf-8"))
    assert content == version_with_attachments.content_document

    metadata = json.loads((directory / "metadata.json").read_text(encoding="utf-8"))
    assert "content_document" not in metadata
    assert metadata["version"] == {"number": 1, "id": "art-001_v1", "previous": None}
    assert metadata["files"] == {"content": "content.json"}
    available = {item["filename"]: item["available"] for item in metadata["attachments"]}
    assert available == {"paper.pdf": True, "data.csv": False}
    assert metadata["urls"]["doi"] == "https://doi.org/10.1234/example.001"

    types = {item.path: item.content_type for item in bundle.files}
    assert types["metadata.json"] == "application/json"
    assert types["attachments/paper.pdf"] == "application/pdf"

    events = json_lines(capsys.readouterr().out)
    missing = [e for e in events if e["event_type"] == "manifest_attachment_missing"]
    assert [e["filename"] for e in missing] == ["data.csv"]
    built = [e for e in events if e["event_type"] == "manifest_built"]
    assert built[0]["file_count"] == 3


@pytest.mark.integration
def test_rebuild_of_unchanged_version_is_byte_identical(builder, version_with_attachments, config):
    first = builder.build(version_with_attachments)
    before = _snapshot(Path(first.directory))

    second = builder.build(version_with_attachments)

    assert _snapshot(Path(second.directory)) == before
    assert [f.sha256 for f in first.files] == [f.sha256 for f in second.files]
    leftovers = [p.name for p in (config.manifests_dir / "art-001").iterdir()]
    assert leftovers == ["v1"]


@pytest.mark.integration
def test_build_rejects_version_without_content(builder, store, make_candidate):
    store.upsert(make_candidate(content_document=None))

    with pytest.raises(ValidationError):
        builder.build(store.get_latest("art-001"))


@pytest.mark.integration
def test_failed_rebuild_keeps_previous_bundle(builder, version_with_attachments, monkeypatch):
    bundle = builder.build(version_with_attachments)
    before = _snapshot(Path(bundle.directory))

    def broken_write(path, data):
        raise OSError("read-only file system")

    monkeypatch.setattr("manifest.builder._write_synced", broken_write)

    with pytest.raises(DurabilityError):
        builder.build(version_with_attachments)
    assert _snapshot(Path(bundle.directory)) == before
    assert sorted(p.name for p in Path(bundle.directory).parent.iterdir()) == ["v1"]


@pytest.mark.integration
def test_later_version_points_at_previous(builder, store, make_candidate):
    store.upsert(make_candidate())
    store.upsert(make_candidate(abstract="Revised.", updated_at="2025-03-01T00:00:00+00:00"))

    metadata = build_metadata(store.get_latest("art-001"), available=set())

    assert metadata["version"]["previous"] == "art-001_v1"
    assert metadata["version"]["number"] == 2


@pytest.mark.integration
def test_build_pending_marks_generated_and_skips_missing_content(builder, store, make_candidate):
    store.upsert(make_candidate("art-001"))
    store.upsert(make_candidate("art-002"))
    store.upsert(make_candidate("art-003", content_document=None))

    report = builder.build_pending()

    assert report.counts == {"generated": 2}
    for article_id in ("art-001", "art-002"):
        latest = store.get_latest(article_id)
        assert latest.manifest_generated is True
        assert latest.manifest_path.endswith(f"{article_id}/v1")
        assert store.get_checkpoint(Stage.MANIFEST, latest.id).status == CheckpointStatus.SUCCEEDED
    assert store.get_latest("art-003").manifest_generated is False

    assert builder.build_pending().counts == {}


@pytest.mark.integration
def test_read_bundle_requires_existing_files(builder, store, make_candidate, tmp_path):
    store.upsert(make_candidate())

    with pytest.raises(ValidationError, match="rebuild manifests"):
        read_bundle(store.get_latest("art-001"), tmp_path / "nowhere")
