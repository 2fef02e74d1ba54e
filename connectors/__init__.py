"""Record sources and the ingest stage."""

from connectors.base import MalformedRecord, RecordSource
from connectors.http_api import HttpApiRecordSource
from connectors.ingest import IngestCoordinator
from connectors.jsonl import JsonlRecordSource

__all__ = [
    "MalformedRecord",
    "RecordSource",
    "HttpApiRecordSource",
    "IngestCoordinator",
    "JsonlRecordSource",
]
