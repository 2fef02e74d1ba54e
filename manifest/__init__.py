"""Publication bundle assembly."""

from manifest.builder import ManifestBuilder, build_metadata, read_bundle

__all__ = ["ManifestBuilder", "build_metadata", "read_bundle"]
