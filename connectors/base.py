"""Record source contract for the content-fetch collaborator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator


@dataclass(frozen=True)
class MalformedRecord:
    """Placeholder for input that could not be decoded at all."""

    location: str
    error: str


class RecordSource(ABC):
    """
    Yields raw article records (plain dicts) from some upstream.

    Sources do no validation beyond decoding; the ingest coordinator turns
    each record into an ArticleCandidate and counts the ones it rejects.
    """

    name: str = "source"

    @abstractmethod
    def iter_records(self) -> Iterator[Any]:
        """Yield raw records, or MalformedRecord for undecodable input."""
        pass
