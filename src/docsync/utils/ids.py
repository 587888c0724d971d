"""Document identity helpers."""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from pathlib import Path

LOGGER = logging.getLogger(__name__)


def canonical_path(path: str | Path) -> str:
    """Absolute, normalized string form of a path."""
    return os.path.abspath(os.fspath(path))


def derive_from_path(path: str | Path) -> str:
    """Stable document id: lowercase hex SHA-256 of the canonical absolute path.

    The id depends only on where the file lives, never on its content, so
    re-indexing the same tree overwrites rather than duplicates.
    """
    digest = hashlib.sha256(canonical_path(path).encode("utf-8")).hexdigest()
    LOGGER.debug("Derived id %s for %s", digest, path)
    return digest


def new_opaque_id() -> str:
    """Random identifier for documents with no path to derive from."""
    return str(uuid.uuid4())
