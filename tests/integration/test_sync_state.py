"""Tests for checkpoints, per-item backoff and the keyed worker pool."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from core.errors import TransientIOError
from core.models import CheckpointStatus, Stage
from sync.state import SyncStateManager
from sync.workers import KeyedWorkerPool


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def backoff_config(config):
    return config.model_copy(
        update={
            "checkpoint_backoff_seconds": 60.0,
            "checkpoint_backoff_cap_seconds": 300.0,
            "checkpoint_max_failures": 3,
        }
    )


@pytest.fixture
def seeded_store(store, make_candidate):
    for article_id in ("art-001", "art-002", "art-003"):
        store.upsert(make_candidate(article_id))
    return store


@pytest.mark.integration
def test_checkpoint_counts_failures_and_resets_on_success(store, backoff_config):
    state = SyncStateManager(store, backoff_config)

    state.checkpoint(Stage.PUBLISH, "art-001_v1", CheckpointStatus.FAILED, TransientIOError("502"))
    second = state.checkpoint(Stage.PUBLISH, "art-001_v1", CheckpointStatus.FAILED, "timeout")
    assert second.retry_count == 2
    assert second.last_error == "timeout"

    stored = store.get_checkpoint(Stage.PUBLISH, "art-001_v1")
    assert stored.status == CheckpointStatus.FAILED
    assert stored.retry_count == 2

    done = state.checkpoint(Stage.PUBLISH, "art-001_v1", CheckpointStatus.SUCCEEDED)
    assert done.retry_count == 0
    assert done.last_error is None


@pytest.mark.integration
def test_retry_delay_doubles_up_to_cap(store, backoff_config):
    state = SyncStateManager(store, backoff_config)

    assert state.retry_delay(0) == timedelta(0)
    assert state.retry_delay(1) == timedelta(seconds=60)
    assert state.retry_delay(2) == timedelta(seconds=120)
    assert state.retry_delay(3) == timedelta(seconds=240)
    assert state.retry_delay(4) == timedelta(seconds=300)


@pytest.mark.integration
def test_failed_item_is_deferred_until_backoff_elapses(seeded_store, backoff_config, fixed_now, capsys, json_lines):
    clock = MutableClock(fixed_now)
    state = SyncStateManager(seeded_store, backoff_config, clock_fn=clock, run_id="run-1")
    state.checkpoint(Stage.EXPORT, "art-002_v1", CheckpointStatus.FAILED, "disk full")

    pending = {version.id for version in state.pending_items(Stage.EXPORT)}
    assert pending == {"art-001_v1", "art-003_v1"}

    events = [e for e in json_lines(capsys.readouterr().out) if e["event_type"] == "pending_items_deferred"]
    assert events[-1]["item_ids"] == ["art-002_v1"]
    assert events[-1]["stage"] == "export"

    clock.now = fixed_now + timedelta(seconds=61)
    pending = {version.id for version in state.pending_items(Stage.EXPORT)}
    assert pending == {"art-001_v1", "art-002_v1", "art-003_v1"}


@pytest.mark.integration
def test_item_is_held_after_max_failures_until_cleared(seeded_store, backoff_config, fixed_now):
    clock = MutableClock(fixed_now)
    state = SyncStateManager(seeded_store, backoff_config, clock_fn=clock)
    for _ in range(3):
        state.checkpoint(Stage.EXPORT, "art-001_v1", CheckpointStatus.FAILED, "boom")

    clock.now = fixed_now + timedelta(days=30)
    assert "art-001_v1" not in {v.id for v in state.pending_items(Stage.EXPORT)}

    assert state.clear(stage=Stage.EXPORT, item_id="art-001_v1") == 1
    assert "art-001_v1" in {v.id for v in state.pending_items(Stage.EXPORT)}


@pytest.mark.integration
def test_skipped_item_is_held_and_success_is_not(seeded_store, backoff_config):
    state = SyncStateManager(seeded_store, backoff_config)
    state.checkpoint(Stage.EXPORT, "art-001_v1", CheckpointStatus.SKIPPED, "invalid row")
    state.checkpoint(Stage.EXPORT, "art-002_v1", CheckpointStatus.SUCCEEDED)

    pending = {version.id for version in state.pending_items(Stage.EXPORT)}
    assert pending == {"art-002_v1", "art-003_v1"}
    assert state.summary() == {"export": {"skipped": 1, "succeeded": 1}}


@pytest.mark.integration
def test_pending_items_respects_limit_and_rejects_ingest(seeded_store, backoff_config):
    state = SyncStateManager(seeded_store, backoff_config)

    assert len(state.pending_items(Stage.EXPORT, limit=2)) == 2
    with pytest.raises(ValueError):
        state.pending_items(Stage.INGEST)


@pytest.mark.integration
def test_pending_sets_follow_store_flags(seeded_store, backoff_config, make_candidate):
    seeded_store.upsert(make_candidate("art-004", content_document=None))
    state = SyncStateManager(seeded_store, backoff_config)

    assert "art-004_v1" not in {v.id for v in state.pending_items(Stage.MANIFEST)}
    assert state.pending_items(Stage.PUBLISH) == []

    seeded_store.mark_manifest_generated("art-001_v1", "/tmp/bundle")
    assert [v.id for v in state.pending_items(Stage.PUBLISH)] == ["art-001_v1"]
    assert "art-001_v1" not in {v.id for v in state.pending_items(Stage.MANIFEST)}


@pytest.mark.integration
def test_worker_pool_returns_outcomes_in_input_order():
    pool = KeyedWorkerPool(max_workers=4)
    items = [("a", 1), ("b", 2), ("a", 3), ("c", 4), ("b", 5)]

    outcomes = pool.run(items, key_fn=lambda item: item[0], fn=lambda item: item[1] * 10)

    assert [outcome.item for outcome in outcomes] == items
    assert [outcome.result for outcome in outcomes] == [10, 20, 30, 40, 50]
    assert all(outcome.ok for outcome in outcomes)


@pytest.mark.integration
def test_worker_pool_serializes_items_sharing_a_key():
    pool = KeyedWorkerPool(max_workers=4)
    lock = threading.Lock()
    active: dict[str, int] = {}
    overlaps: list[str] = []
    order: dict[str, list[int]] = {}

    def work(item: tuple[str, int]) -> int:
        key, number = item
        with lock:
            active[key] = active.get(key, 0) + 1
            if active[key] > 1:
                overlaps.append(key)
            order.setdefault(key, []).append(number)
        time.sleep(0.01)
        with lock:
            active[key] -= 1
        return number

    items = [(key, number) for number in range(5) for key in ("x", "y", "z")]
    pool.run(items, key_fn=lambda item: item[0], fn=work)

    assert overlaps == []
    assert order == {key: [0, 1, 2, 3, 4] for key in ("x", "y", "z")}


@pytest.mark.integration
def test_worker_pool_isolates_failures():
    pool = KeyedWorkerPool(max_workers=2)

    def work(item: int) -> int:
        if item == 2:
            raise TransientIOError("flaky")
        return item

    outcomes = pool.run([1, 2, 3], key_fn=lambda item: item, fn=work)

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert isinstance(outcomes[1].error, TransientIOError)
    assert pool.run([], key_fn=lambda item: item, fn=work) == []
    with pytest.raises(ValueError):
        KeyedWorkerPool(max_workers=0)
