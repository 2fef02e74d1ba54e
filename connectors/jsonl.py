"""Local file connector: JSON Lines or a JSON array of article records."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

from connectors.base import MalformedRecord, RecordSource

_LIST_KEYS = ("articles", "items", "data", "records")


def _unwrap(document: Any) -> list[Any]:
    if isinstance(document, list):
        return document
    if isinstance(document, dict):
        for key in _LIST_KEYS:
            if isinstance(document.get(key), list):
                return document[key]
    return [document]


class JsonlRecordSource(RecordSource):
    """Read records from a `.jsonl` file (one object per line) or a `.json` document."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.name = f"file:{self.path.name}"

    def iter_records(self) -> Iterator[Any]:
        if not self.path.exists():
            raise FileNotFoundError(f"record file not found: {self.path}")

        if self.path.suffix.lower() == ".json":
            try:
                document = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                yield MalformedRecord(location=str(self.path), error=str(exc))
                return
            yield from _unwrap(document)
            return

        with self.path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                text = line.strip()
                if not text:
                    continue
                try:
                    yield json.loads(text)
                except json.JSONDecodeError as exc:
                    yield MalformedRecord(location=f"{self.path.name}:{line_number}", error=str(exc))
