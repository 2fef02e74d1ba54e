"""
Resumable per-stage progress.

Pending work is always re-derived from the version store's flags, so a
crash at any point loses nothing: the next pass selects whatever was not
yet marked. Checkpoints add per-item error bookkeeping on top, used for
observability and to back off items that keep failing.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Callable

from core.config import ArchiverConfig
from core.models import ArticleVersion, CheckpointStatus, Stage, SyncCheckpoint
from core.structured_logging import emit_json_event
from storage.sqlite import SQLiteVersionStore


class SyncStateManager:
    """Checkpoint writer and pending-set selector for every stage."""

    def __init__(
        self,
        store: SQLiteVersionStore,
        config: ArchiverConfig | None = None,
        clock_fn: Callable[[], datetime] | None = None,
        run_id: str | None = None,
    ) -> None:
        config = config or ArchiverConfig()
        self.store = store
        self.max_item_failures = config.checkpoint_max_failures
        self.backoff_base = timedelta(seconds=config.checkpoint_backoff_seconds)
        self.backoff_cap = timedelta(seconds=config.checkpoint_backoff_cap_seconds)
        self.run_id = run_id
        self._clock = clock_fn or (lambda: datetime.now(UTC))

    def checkpoint(
        self,
        stage: Stage,
        item_id: str,
        status: CheckpointStatus,
        error: BaseException | str | None = None,
    ) -> SyncCheckpoint:
        """
        Record the outcome of one item.

        Success resets the retry counter; each failure increments it.
        """
        previous = self.store.get_checkpoint(stage, item_id)
        retry_count = previous.retry_count if previous else 0
        if status == CheckpointStatus.SUCCEEDED:
            retry_count = 0
        elif status == CheckpointStatus.FAILED:
            retry_count += 1

        last_error: str | None = None
        if error is not None:
            last_error = f"{type(error).__name__}: {error}" if isinstance(error, BaseException) else error

        checkpoint = SyncCheckpoint(
            stage=stage,
            item_id=item_id,
            status=status,
            retry_count=retry_count,
            last_error=last_error,
            updated_at=self._clock(),
        )
        self.store.save_checkpoint(checkpoint)
        if status != CheckpointStatus.SUCCEEDED:
            emit_json_event(
                "checkpoint_recorded",
                run_id=self.run_id,
                level="warning",
                component="sync",
                stage=stage.value,
                item_id=item_id,
                status=status.value,
                retry_count=retry_count,
                last_error=last_error,
            )
        return checkpoint

    def retry_delay(self, retry_count: int) -> timedelta:
        """Backoff before a failed item is offered again."""
        if retry_count <= 0:
            return timedelta(0)
        delay = self.backoff_base * (2 ** (retry_count - 1))
        return min(delay, self.backoff_cap)

    def is_deferred(self, checkpoint: SyncCheckpoint | None, now: datetime | None = None) -> bool:
        """True when the item should sit out this pass."""
        if checkpoint is None or checkpoint.status == CheckpointStatus.SUCCEEDED:
            return False
        if checkpoint.status == CheckpointStatus.SKIPPED:
            return True
        if checkpoint.retry_count >= self.max_item_failures:
            return True
        now = now or self._clock()
        return now < checkpoint.updated_at + self.retry_delay(checkpoint.retry_count)

    def _candidates(self, stage: Stage) -> list[ArticleVersion]:
        if stage == Stage.EXPORT:
            return self.store.list_unexported()
        if stage == Stage.ATTACHMENTS:
            return self.store.list_missing_attachments()
        if stage == Stage.MANIFEST:
            return self.store.list_needing_manifest()
        if stage == Stage.PUBLISH:
            return self.store.list_needing_publish()
        raise ValueError(f"stage {stage.value} has no store-derived pending set")

    def pending_items(self, stage: Stage, limit: int | None = None) -> list[ArticleVersion]:
        """
        Return latest versions still needing `stage`, minus backed-off items.

        Raises:
            ValueError: for the ingest stage, whose work comes from a record source.
        """
        candidates = self._candidates(stage)
        held = {cp.item_id: cp for cp in self.store.list_checkpoints(stage)}
        now = self._clock()

        ready: list[ArticleVersion] = []
        deferred: list[str] = []
        for version in candidates:
            if self.is_deferred(held.get(version.id), now):
                deferred.append(version.id)
                continue
            ready.append(version)
            if limit is not None and len(ready) >= limit:
                break

        if deferred:
            emit_json_event(
                "pending_items_deferred",
                run_id=self.run_id,
                component="sync",
                stage=stage.value,
                deferred_count=len(deferred),
                item_ids=deferred[:20],
            )
        return ready

    def clear(self, stage: Stage | None = None, item_id: str | None = None) -> int:
        """Forget checkpoints so held items are offered again."""
        return self.store.delete_checkpoints(stage=stage, item_id=item_id)

    def summary(self) -> dict[str, dict[str, int]]:
        """Checkpoint counts per stage and status."""
        result: dict[str, dict[str, int]] = {}
        for stage in Stage:
            counts: dict[str, int] = {}
            for cp in self.store.list_checkpoints(stage):
                counts[cp.status.value] = counts.get(cp.status.value, 0) + 1
            if counts:
                result[stage.value] = counts
        return result
