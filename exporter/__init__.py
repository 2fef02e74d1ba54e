"""Parquet export of latest article versions."""

from exporter.batches import ExportCoordinator, batch_name_for, partition_rows
from exporter.parquet import ParquetSnapshotWriter, version_to_row

__all__ = [
    "ExportCoordinator",
    "ParquetSnapshotWriter",
    "batch_name_for",
    "partition_rows",
    "version_to_row",
]
