"""
Publish stage: upload bundles and record their content identifiers.

Per version, every bundle file is uploaded first; the path manifest that
ties them together is uploaded only once all file ids are known. File ids
are cached per (version, path, sha256), so a rerun after a partial failure
uploads only what is still missing.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, TypeVar

from core.config import ArchiverConfig
from core.errors import ValidationError
from core.models import ArticleVersion, CheckpointStatus, PublishResult, Stage, StageReport
from core.structured_logging import emit_error_event, emit_json_event
from fetcher.retry import NetworkGuard
from manifest.builder import METADATA_FILE, ManifestBuilder, read_bundle
from publisher.network import NetworkStorageClient, make_tags, path_manifest_bytes
from storage.sqlite import SQLiteVersionStore
from sync.state import SyncStateManager
from sync.workers import KeyedWorkerPool

T = TypeVar("T")

MIB = 1024 * 1024
PARQUET_CONTENT_TYPE = "application/octet-stream"


class PublishScheduler:
    """Idempotent uploader for bundles and export batches."""

    def __init__(
        self,
        store: SQLiteVersionStore,
        config: ArchiverConfig,
        client: NetworkStorageClient,
        guard: NetworkGuard | None = None,
        state: SyncStateManager | None = None,
        pool: KeyedWorkerPool | None = None,
        dry_run: bool = False,
        run_id: str | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.client = client
        self.guard = guard or NetworkGuard.from_config(config, name="network-storage", run_id=run_id)
        self.state = state or SyncStateManager(store, config, run_id=run_id)
        self.pool = pool or KeyedWorkerPool(config.worker_count)
        self.dry_run = dry_run
        self.run_id = run_id
        self._builder = ManifestBuilder(store, config, state=self.state, pool=self.pool, run_id=run_id)

    def estimate_cost(self, nbytes: int) -> float:
        """Advisory upload cost; never affects what gets uploaded."""
        return round(nbytes / MIB * self.config.cost_per_mib, 6)

    def _call(self, fn: Callable[[], T], operation: str) -> T:
        if self.dry_run:
            return fn()
        return self.guard.call(fn, operation=operation)

    def _bundle_dir(self, version: ArticleVersion) -> Path:
        if version.manifest_path:
            return Path(version.manifest_path)
        return self._builder.bundle_dir(version)

    def publish(self, version: ArticleVersion) -> PublishResult:
        """
        Upload one version's bundle.

        Raises:
            ValidationError: when the bundle was never generated or is gone.
            TransientIOError: when an upload still fails after retries. File
                ids uploaded so far are kept; the path manifest is not sent.
        """
        if version.manifest_uploaded:
            return PublishResult(
                version_id=version.id,
                content_identifier=version.content_identifier,
                skipped=True,
                dry_run=self.dry_run,
            )
        if not version.manifest_generated:
            raise ValidationError(f"version {version.id} has no generated manifest")

        bundle = read_bundle(version, self._bundle_dir(version))
        cached = {} if self.dry_run else self.store.get_uploaded_files(version.id)
        declared = {f"attachments/{ref.filename}": ref.filename for ref in version.attachments}

        result = PublishResult(version_id=version.id, dry_run=self.dry_run)
        for bundle_file in bundle.files:
            previous = cached.get(bundle_file.path)
            if previous is not None and previous[0] == bundle_file.sha256:
                result.file_identifiers[bundle_file.path] = previous[1]
                result.reused_files += 1
                continue

            data = (Path(bundle.directory) / bundle_file.path).read_bytes()
            extra = {"Filename": declared[bundle_file.path]} if bundle_file.path in declared else {}
            tags = make_tags(bundle_file.content_type, self.config.app_name, **extra)
            identifier = self._call(
                lambda: self.client.upload_file(data, tags),
                operation="upload_file",
            )
            if not self.dry_run:
                self.store.save_uploaded_file(version.id, bundle_file, identifier)
            result.file_identifiers[bundle_file.path] = identifier
            result.uploaded_files += 1
            result.uploaded_bytes += bundle_file.size

        paths = dict(result.file_identifiers)
        result.content_identifier = self._call(
            lambda: self.client.upload_path_manifest(paths, index=METADATA_FILE),
            operation="upload_path_manifest",
        )
        result.uploaded_bytes += len(path_manifest_bytes(paths, METADATA_FILE))
        result.estimated_cost = self.estimate_cost(result.uploaded_bytes)

        if not self.dry_run:
            self.store.mark_manifest_uploaded(version.id, result.content_identifier)

        emit_json_event(
            "bundle_published",
            run_id=self.run_id,
            component="publisher",
            version_id=version.id,
            content_identifier=result.content_identifier,
            uploaded_files=result.uploaded_files,
            reused_files=result.reused_files,
            uploaded_bytes=result.uploaded_bytes,
            estimated_cost=result.estimated_cost,
            dry_run=self.dry_run,
        )
        return result

    def publish_pending(self, limit: int | None = None) -> StageReport:
        """Publish every latest version whose bundle is built but not uploaded."""
        report = StageReport(stage=Stage.PUBLISH)
        versions = self.state.pending_items(Stage.PUBLISH, limit=limit)
        outcomes = self.pool.run(versions, key_fn=lambda v: v.article_id, fn=self.publish)

        total_cost = 0.0
        for outcome in outcomes:
            version = outcome.item
            if outcome.ok and outcome.result is not None:
                result = outcome.result
                report.count("dry_run" if self.dry_run else "published")
                report.count("uploaded_files", result.uploaded_files)
                report.count("reused_files", result.reused_files)
                report.count("uploaded_bytes", result.uploaded_bytes)
                total_cost += result.estimated_cost
                if not self.dry_run:
                    self.state.checkpoint(Stage.PUBLISH, version.id, CheckpointStatus.SUCCEEDED)
                continue

            exc = outcome.error
            if isinstance(exc, ValidationError):
                report.skip(version.id, exc)
                status = CheckpointStatus.SKIPPED
            else:
                report.fail(version.id, exc)
                status = CheckpointStatus.FAILED
            if not self.dry_run:
                self.state.checkpoint(Stage.PUBLISH, version.id, status, exc)
            emit_error_event(
                "bundle_publish_failed",
                exc,
                run_id=self.run_id,
                level="warning",
                component="publisher",
                version_id=version.id,
            )

        report.ended_at = datetime.now(UTC)
        emit_json_event(
            "publish_pass_completed",
            run_id=self.run_id,
            component="publisher",
            counts=report.counts,
            estimated_cost=round(total_cost, 6),
            dry_run=self.dry_run,
        )
        return report

    def publish_batches(self, limit: int | None = None) -> StageReport:
        """Upload recorded export batch files that have no remote identifier yet."""
        report = StageReport(stage=Stage.PUBLISH)
        pending = [batch for batch in self.store.list_export_batches() if batch.remote_identifier is None]
        if limit is not None:
            pending = pending[:limit]

        for batch in pending:
            try:
                data = Path(batch.file_path).read_bytes()
                tags = make_tags(
                    PARQUET_CONTENT_TYPE,
                    self.config.app_name,
                    File_Type="parquet",
                    Data_Type="articles",
                    Batch_Name=batch.batch_name,
                )
                identifier = self._call(lambda: self.client.upload_file(data, tags), operation="upload_batch")
                if not self.dry_run:
                    self.store.set_batch_remote_identifier(batch.batch_name, identifier)
            except Exception as exc:
                report.fail(batch.batch_name, exc)
                emit_error_event(
                    "batch_upload_failed",
                    exc,
                    run_id=self.run_id,
                    level="warning",
                    component="publisher",
                    batch_name=batch.batch_name,
                )
                continue
            report.count("dry_run" if self.dry_run else "uploaded")
            report.count("uploaded_bytes", len(data))
            emit_json_event(
                "batch_uploaded",
                run_id=self.run_id,
                component="publisher",
                batch_name=batch.batch_name,
                remote_identifier=identifier,
                estimated_cost=self.estimate_cost(len(data)),
                dry_run=self.dry_run,
            )
        report.ended_at = datetime.now(UTC)
        return report

    def reset(self, article_id: str | None = None, version_id: str | None = None) -> int:
        """Clear upload state so the next publish pass re-uploads; history is untouched."""
        count = self.store.reset_publish_state(article_id=article_id, version_id=version_id)
        if version_id is None and article_id is not None:
            for version in self.store.list_versions(article_id):
                self.state.clear(stage=Stage.PUBLISH, item_id=version.id)
        else:
            self.state.clear(stage=Stage.PUBLISH, item_id=version_id)
        emit_json_event(
            "publish_state_reset",
            run_id=self.run_id,
            component="publisher",
            article_id=article_id,
            version_id=version_id,
            versions_reset=count,
        )
        return count
