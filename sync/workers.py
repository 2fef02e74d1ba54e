"""Bounded worker pool that serializes work per key."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class WorkOutcome(Generic[T, R]):
    """Result or error for one submitted item."""

    item: T
    result: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class KeyedWorkerPool:
    """
    Run items concurrently across keys, sequentially within a key.

    Items sharing a key (an article_id) run one after another in input
    order on the same worker, so no two workers ever touch the same
    article at once. Failures are captured per item and never cancel
    siblings.
    """

    def __init__(self, max_workers: int = 4) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers

    @staticmethod
    def _run_group(
        indexed_items: list[tuple[int, T]],
        fn: Callable[[T], R],
    ) -> list[tuple[int, WorkOutcome[T, R]]]:
        outcomes: list[tuple[int, WorkOutcome[T, R]]] = []
        for index, item in indexed_items:
            try:
                outcomes.append((index, WorkOutcome(item=item, result=fn(item))))
            except Exception as exc:
                outcomes.append((index, WorkOutcome(item=item, error=exc)))
        return outcomes

    def run(
        self,
        items: Sequence[T],
        key_fn: Callable[[T], Hashable],
        fn: Callable[[T], R],
    ) -> list[WorkOutcome[T, R]]:
        """Process every item; outcomes are returned in input order."""
        groups: dict[Hashable, list[tuple[int, T]]] = {}
        for index, item in enumerate(items):
            groups.setdefault(key_fn(item), []).append((index, item))

        slots: list[WorkOutcome[T, R] | None] = [None] * len(items)
        if not groups:
            return []

        if self.max_workers == 1 or len(groups) == 1:
            for group in groups.values():
                for index, outcome in self._run_group(group, fn):
                    slots[index] = outcome
        else:
            with ThreadPoolExecutor(
                max_workers=min(self.max_workers, len(groups)),
                thread_name_prefix="archiver",
            ) as executor:
                futures = [executor.submit(self._run_group, group, fn) for group in groups.values()]
                for future in futures:
                    for index, outcome in future.result():
                        slots[index] = outcome

        return [outcome for outcome in slots if outcome is not None]
