"""
Pipeline orchestration for article-archiver.

Stages run as sequential passes, always in this order:
ingest → attachments → export → manifest → publish

Each pass re-derives its work from the version store, so any subset of
stages can be run (or rerun) on its own:
- Item failures are counted in the stage report and never stop the pass
- A stage-level error (unreadable record source, say) fails the run and
  skips the remaining stages
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable, Sequence

from connectors.base import RecordSource
from connectors.ingest import IngestCoordinator
from core.config import ArchiverConfig
from core.models import RunLog, RunStatus, Stage, StageReport
from core.structured_logging import emit_error_event, emit_json_event
from exporter.batches import ExportCoordinator
from fetcher.http import AttachmentFetchStage
from manifest.builder import ManifestBuilder
from publisher.network import DryRunNetworkClient, HttpNetworkStorageClient, NetworkStorageClient
from publisher.scheduler import PublishScheduler
from storage.sqlite import SQLiteVersionStore
from sync.state import SyncStateManager
from sync.workers import KeyedWorkerPool

STAGE_ORDER: tuple[Stage, ...] = (
    Stage.INGEST,
    Stage.ATTACHMENTS,
    Stage.EXPORT,
    Stage.MANIFEST,
    Stage.PUBLISH,
)


class Pipeline:
    """
    Main orchestrator: coordinates all stages in sequence.

    Usage:
        pipeline = Pipeline.from_config(config, source=JsonlRecordSource("records.jsonl"), dry_run=True)
        run_log = pipeline.run()
    """

    def __init__(
        self,
        store: SQLiteVersionStore,
        ingest: IngestCoordinator,
        attachments: AttachmentFetchStage,
        exporter: ExportCoordinator,
        manifests: ManifestBuilder,
        publisher: PublishScheduler | Callable[[], PublishScheduler],
        source: RecordSource | None = None,
        run_id: str | None = None,
        dry_run: bool = False,
    ) -> None:
        self.store = store
        self.ingest = ingest
        self.attachments = attachments
        self.exporter = exporter
        self.manifests = manifests
        self._publisher = publisher
        self.source = source
        self.run_id = run_id
        self.dry_run = dry_run

    @classmethod
    def from_config(
        cls,
        config: ArchiverConfig,
        source: RecordSource | None = None,
        client: NetworkStorageClient | None = None,
        dry_run: bool = False,
        run_id: str | None = None,
        store: SQLiteVersionStore | None = None,
    ) -> "Pipeline":
        """Wire every stage from one config object, sharing store, pool and sync state."""
        store = store or SQLiteVersionStore(config.db_path)
        state = SyncStateManager(store, config, run_id=run_id)
        pool = KeyedWorkerPool(config.worker_count)
        return cls(
            store=store,
            ingest=IngestCoordinator(store, config, pool=pool, state=state, run_id=run_id),
            attachments=AttachmentFetchStage(store, config, state=state, pool=pool, run_id=run_id),
            exporter=ExportCoordinator(store, config, state=state, run_id=run_id),
            manifests=ManifestBuilder(store, config, state=state, pool=pool, run_id=run_id),
            publisher=lambda: PublishScheduler(
                store,
                config,
                client or (DryRunNetworkClient() if dry_run else HttpNetworkStorageClient(config)),
                state=state,
                pool=pool,
                dry_run=dry_run,
                run_id=run_id,
            ),
            source=source,
            run_id=run_id,
            dry_run=dry_run,
        )

    @property
    def publisher(self) -> PublishScheduler:
        """Publish stage, built on first use so other stages never need upload settings."""
        if not isinstance(self._publisher, PublishScheduler):
            self._publisher = self._publisher()
        return self._publisher

    def run_stage(self, stage: Stage, limit: int | None = None) -> StageReport:
        """Run one stage pass and return its report."""
        if stage == Stage.INGEST:
            if self.source is None:
                raise ValueError("ingest requires a record source")
            return self.ingest.ingest(self.source.iter_records(), limit=limit)
        if stage == Stage.ATTACHMENTS:
            return self.attachments.run(limit=limit)
        if stage == Stage.EXPORT:
            return self.exporter.run(limit=limit)
        if stage == Stage.MANIFEST:
            return self.manifests.build_pending(limit=limit)
        return self.publisher.publish_pending(limit=limit)

    def _emit_stage_event(self, event_type: str, stage: Stage, **payload: object) -> None:
        emit_json_event(
            event_type,
            run_id=self.run_id,
            component="pipeline",
            stage=stage.value,
            **payload,
        )

    def run(self, stages: Sequence[Stage] | None = None, limit: int | None = None) -> RunLog:
        """
        Execute the requested stages (default: all) in pipeline order.

        Ingest is skipped when no record source is configured. A run id names
        exactly one run; calling run() twice on a pipeline built with an
        explicit run_id raises ConflictError before any stage starts.
        """
        requested = set(stages) if stages is not None else set(STAGE_ORDER)
        ordered = [stage for stage in STAGE_ORDER if stage in requested]
        if self.source is None and stages is None:
            ordered = [stage for stage in ordered if stage != Stage.INGEST]

        run_log = RunLog(stages=ordered, dry_run=self.dry_run)
        if self.run_id:
            run_log.id = self.run_id
        self.store.create_run_log(run_log)

        try:
            for stage in ordered:
                self._emit_stage_event("pipeline_stage_started", stage, limit=limit)
                report = self.run_stage(stage, limit=limit)
                run_log.reports.append(report)
                self._emit_stage_event(
                    "pipeline_stage_completed",
                    stage,
                    counts=report.counts,
                    failed_items=[item.item_id for item in report.failures],
                )
            run_log.status = RunStatus.COMPLETED
        except Exception as exc:
            emit_error_event(
                "pipeline_stage_error",
                exc,
                run_id=self.run_id,
                component="pipeline",
                stage=stage.value,
            )
            run_log.status = RunStatus.FAILED
            run_log.error_message = f"{stage.value}: {exc}"

        run_log.ended_at = datetime.now(UTC)
        self.store.update_run_log(run_log)
        return run_log
