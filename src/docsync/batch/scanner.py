"""Directory scanning with a resumable cursor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Collection, Protocol

from docsync.utils.files import iter_supported_paths

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ScanCursor:
    """Ordered paths of one scan plus the position of the next unread path."""

    paths: tuple[Path, ...]
    next_index: int = 0

    @property
    def exhausted(self) -> bool:
        return self.next_index >= len(self.paths)

    @property
    def remaining(self) -> int:
        return max(0, len(self.paths) - self.next_index)


class CheckpointStore(Protocol):
    def save_checkpoint(self, instance_key: str, next_index: int) -> None: ...

    def load_checkpoint(self, instance_key: str) -> int | None: ...


class DirectoryScanner:
    """Walks ``base_dir`` once and exposes the matching files through a cursor."""

    def __init__(self, base_dir: Path | None, extensions: Collection[str]) -> None:
        self.base_dir = base_dir
        self.extensions = frozenset(extensions)

    def open(self) -> ScanCursor:
        """Scan the tree. Missing configuration or directory yields an empty cursor."""
        if self.base_dir is None or not str(self.base_dir).strip():
            LOGGER.error("Target base directory is not configured; nothing to scan")
            return ScanCursor(paths=())
        if not self.base_dir.is_dir():
            LOGGER.warning("Target base directory %s does not exist or is not a directory", self.base_dir)
            return ScanCursor(paths=())
        if not self.extensions:
            LOGGER.warning("Supported extension set is empty; nothing to scan")
            return ScanCursor(paths=())

        LOGGER.info("Scanning %s for %s", self.base_dir, ", ".join(sorted(self.extensions)))
        paths = tuple(iter_supported_paths(self.base_dir, self.extensions))
        LOGGER.info("Scan finished: %d matching files", len(paths))
        return ScanCursor(paths=paths)

    @staticmethod
    def next(cursor: ScanCursor) -> Path | None:
        """Return the path at the cursor and advance it, or ``None`` at the end."""
        if cursor.exhausted:
            return None
        path = cursor.paths[cursor.next_index]
        cursor.next_index += 1
        return path


def checkpoint(cursor: ScanCursor, store: CheckpointStore, instance_key: str) -> None:
    store.save_checkpoint(instance_key, cursor.next_index)
    LOGGER.debug("Checkpointed %s at index %d", instance_key, cursor.next_index)


def restore(cursor: ScanCursor, store: CheckpointStore, instance_key: str) -> ScanCursor:
    """Move the cursor to the stored position for ``instance_key``, if any.

    Only meaningful when the tree and scan order are unchanged since the
    checkpoint was written.
    """
    saved = store.load_checkpoint(instance_key)
    if saved is None:
        return cursor
    position = min(max(saved, cursor.next_index), len(cursor.paths))
    if saved > len(cursor.paths):
        LOGGER.warning(
            "Checkpoint %d is past the %d scanned files; the tree changed since the last run",
            saved,
            len(cursor.paths),
        )
    cursor.next_index = position
    LOGGER.info("Resuming scan for %s at index %d", instance_key, position)
    return cursor
