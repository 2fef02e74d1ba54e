"""
Per-version publication bundles.

Layout under `{manifests_dir}/{article_id}/v{n}/`:

    metadata.json        everything except the content document
    content.json         the content document
    attachments/<name>   copies of downloaded attachment files

Bundles are a pure function of stored fields and already-fetched files:
JSON is rendered with sorted keys and a fixed indent and carries no
generation timestamp, so rebuilding an unchanged version is byte-identical.
"""

from __future__ import annotations

import json
import mimetypes
import os
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import jsonschema

from core.config import ArchiverConfig
from core.errors import DurabilityError, ValidationError
from core.fingerprint import pretty_json, sha256_bytes
from core.models import ArticleVersion, Bundle, BundleFile, CheckpointStatus, Stage, StageReport
from core.paths import safe_path_component
from core.structured_logging import emit_json_event
from storage.sqlite import SQLiteVersionStore, version_id_for
from sync.state import SyncStateManager
from sync.workers import KeyedWorkerPool

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SCHEMAS_DIR = PROJECT_ROOT / "schemas"
BUNDLE_METADATA_SCHEMA = json.loads((SCHEMAS_DIR / "bundle_metadata.schema.json").read_text(encoding="utf-8"))

METADATA_FILE = "metadata.json"
CONTENT_FILE = "content.json"
ATTACHMENTS_DIR = "attachments"
SCHEMA_VERSION = "1.0"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def content_type_for(path: str, declared: str | None = None) -> str:
    if path.endswith(".json") and "/" not in path:
        return "application/json"
    if declared:
        return declared
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "application/octet-stream"


def build_metadata(version: ArticleVersion, available: set[str]) -> dict[str, Any]:
    """metadata.json payload; `available` names attachments present in the bundle."""
    return {
        "schema_version": SCHEMA_VERSION,
        "article_id": version.article_id,
        "slug": version.slug,
        "version": {
            "number": version.version_number,
            "id": version.id,
            "previous": version_id_for(version.article_id, version.version_number - 1)
            if version.version_number > 1
            else None,
        },
        "title": version.title,
        "abstract": version.abstract,
        "doi": version.doi,
        "license": version.license,
        "dates": {
            "created": _iso(version.source_created_at),
            "updated": _iso(version.source_updated_at),
            "published": _iso(version.published_at),
        },
        "authors": [author.model_dump(mode="json") for author in version.authors],
        "keywords": list(version.keywords),
        "collections": list(version.collections),
        "statistics": {
            "author_count": len(version.authors),
            "attachment_count": len(version.attachments),
            "has_content": version.content_document is not None,
        },
        "attachments": [
            {
                "filename": ref.filename,
                "path": f"{ATTACHMENTS_DIR}/{ref.filename}",
                "size": ref.size,
                "content_type": ref.content_type,
                "sha256": ref.sha256,
                "source_url": ref.source_url,
                "available": ref.filename in available,
            }
            for ref in version.attachments
        ],
        "urls": {
            "source": version.url,
            "doi": f"https://doi.org/{version.doi}" if version.doi else None,
        },
        "files": {"content": CONTENT_FILE},
    }


def _write_synced(path: Path, data: bytes) -> None:
    with open(path, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())


def read_bundle(version: ArticleVersion, directory: Path) -> Bundle:
    """
    Describe an existing bundle directory (sizes, hashes, types).

    Raises:
        ValidationError: when the bundle directory or its required files are missing.
    """
    if not (directory / METADATA_FILE).is_file() or not (directory / CONTENT_FILE).is_file():
        raise ValidationError(f"bundle for {version.id} is missing at {directory}; rebuild manifests")

    declared = {ref.filename: ref.content_type for ref in version.attachments}
    files: list[BundleFile] = []
    for path in sorted(p for p in directory.rglob("*") if p.is_file()):
        relative = path.relative_to(directory).as_posix()
        data = path.read_bytes()
        files.append(
            BundleFile(
                path=relative,
                size=len(data),
                sha256=sha256_bytes(data),
                content_type=content_type_for(relative, declared.get(path.name)),
            )
        )
    present = {item.path for item in files}
    return Bundle(
        version_id=version.id,
        article_id=version.article_id,
        version_number=version.version_number,
        directory=str(directory),
        files=files,
        missing_attachments=[
            ref.filename for ref in version.attachments if f"{ATTACHMENTS_DIR}/{ref.filename}" not in present
        ],
    )


class ManifestBuilder:
    """Assemble bundles and advance `manifest_generated`."""

    def __init__(
        self,
        store: SQLiteVersionStore,
        config: ArchiverConfig,
        state: SyncStateManager | None = None,
        pool: KeyedWorkerPool | None = None,
        run_id: str | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.state = state or SyncStateManager(store, config, run_id=run_id)
        self.pool = pool or KeyedWorkerPool(config.worker_count)
        self.run_id = run_id

    def bundle_dir(self, version: ArticleVersion) -> Path:
        return Path(self.config.manifests_dir) / safe_path_component(version.article_id) / f"v{version.version_number}"

    def _stage_files(self, version: ArticleVersion, staging: Path) -> None:
        (staging / ATTACHMENTS_DIR).mkdir(parents=True, exist_ok=True)

        available: set[str] = set()
        for ref in version.attachments:
            source = Path(ref.local_path) if ref.local_path else None
            if source is None or not source.is_file():
                emit_json_event(
                    "manifest_attachment_missing",
                    run_id=self.run_id,
                    level="warning",
                    component="manifest",
                    version_id=version.id,
                    filename=ref.filename,
                    local_path=ref.local_path,
                )
                continue
            shutil.copyfile(source, staging / ATTACHMENTS_DIR / ref.filename)
            available.add(ref.filename)

        metadata = build_metadata(version, available)
        try:
            jsonschema.validate(metadata, BUNDLE_METADATA_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise ValidationError(f"bundle metadata invalid for {version.id}: {exc.message}") from exc

        _write_synced(staging / METADATA_FILE, pretty_json(metadata).encode("utf-8"))
        _write_synced(staging / CONTENT_FILE, pretty_json(version.content_document).encode("utf-8"))

    def build(self, version: ArticleVersion) -> Bundle:
        """
        Write the bundle for one version and describe it.

        Raises:
            ValidationError: when the version has no content document.
            DurabilityError: when the bundle cannot be written. Any previous
                bundle at the same path is left in place.
        """
        if version.content_document is None:
            raise ValidationError(f"version {version.id} has no content document")

        final_dir = self.bundle_dir(version)
        final_dir.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex[:8]
        staging = final_dir.parent / f".{final_dir.name}.staging-{token}"
        retired = final_dir.parent / f".{final_dir.name}.old-{token}"

        try:
            self._stage_files(version, staging)
            if final_dir.exists():
                os.replace(final_dir, retired)
            os.replace(staging, final_dir)
        except OSError as exc:
            if retired.exists() and not final_dir.exists():
                os.replace(retired, final_dir)
            raise DurabilityError(f"failed to write bundle for {version.id}: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            shutil.rmtree(retired, ignore_errors=True)

        bundle = read_bundle(version, final_dir)
        emit_json_event(
            "manifest_built",
            run_id=self.run_id,
            component="manifest",
            version_id=version.id,
            directory=str(final_dir),
            file_count=len(bundle.files),
            total_bytes=bundle.total_bytes,
            missing_attachments=bundle.missing_attachments,
        )
        return bundle

    def _build_and_mark(self, version: ArticleVersion) -> Bundle:
        bundle = self.build(version)
        self.store.mark_manifest_generated(version.id, bundle.directory)
        return bundle

    def build_pending(self, limit: int | None = None) -> StageReport:
        """Build bundles for every latest version that has content but no bundle yet."""
        report = StageReport(stage=Stage.MANIFEST)
        versions = self.state.pending_items(Stage.MANIFEST, limit=limit)
        outcomes = self.pool.run(versions, key_fn=lambda v: v.article_id, fn=self._build_and_mark)

        for outcome in outcomes:
            version = outcome.item
            if outcome.ok and outcome.result is not None:
                report.count("generated")
                if outcome.result.missing_attachments:
                    report.count("missing_attachments", len(outcome.result.missing_attachments))
                self.state.checkpoint(Stage.MANIFEST, version.id, CheckpointStatus.SUCCEEDED)
            elif isinstance(outcome.error, ValidationError):
                report.skip(version.id, outcome.error)
                self.state.checkpoint(Stage.MANIFEST, version.id, CheckpointStatus.SKIPPED, outcome.error)
            else:
                report.fail(version.id, outcome.error)
                self.state.checkpoint(Stage.MANIFEST, version.id, CheckpointStatus.FAILED, outcome.error)
        report.ended_at = datetime.now(UTC)
        return report
