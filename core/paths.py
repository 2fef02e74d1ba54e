"""Filesystem helpers for durable, crash-safe writes."""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path

from core.errors import DurabilityError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_path_component(value: str) -> str:
    """Make an identifier usable as one directory name."""
    cleaned = _UNSAFE_CHARS.sub("_", value.strip()).strip(".")
    return cleaned or "_"


def temp_path_for(final_path: Path) -> Path:
    """Reserve a temporary file next to `final_path` (same filesystem, so rename is atomic)."""
    final_path.parent.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=f".{final_path.name}.", suffix=".tmp", dir=final_path.parent)
    os.close(fd)
    return Path(name)


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def fsync_and_replace(temp_path: Path, final_path: Path) -> None:
    """
    Flush a fully written temp file and move it over `final_path`.

    Raises:
        DurabilityError: when the flush or rename fails. The temp file is removed.
    """
    try:
        with open(temp_path, "rb+") as handle:
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, final_path)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise DurabilityError(f"failed to persist {final_path}: {exc}") from exc
    _fsync_directory(final_path.parent)
