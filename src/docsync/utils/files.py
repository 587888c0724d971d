"""Utility helpers for working with files."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Collection, Iterator


def has_supported_extension(path: Path, extensions: Collection[str]) -> bool:
    name = path.name.lower()
    return any(name.endswith(ext) for ext in extensions)


def iter_supported_paths(base_dir: Path, extensions: Collection[str]) -> Iterator[Path]:
    """Yield absolute paths of regular files under ``base_dir`` in a stable order."""
    if not extensions or not base_dir.is_dir():
        return
    root = Path(os.path.abspath(base_dir))
    for path in sorted(root.rglob("*"), key=lambda item: item.as_posix()):
        if path.is_file() and has_supported_extension(path, extensions):
            yield path


def resolve_target(base_dir: Path, *parts: str) -> Path:
    """Join ``parts`` under ``base_dir`` and collapse ``..``/``.`` segments.

    Leading separators in ``parts`` are ignored so every part stays relative to
    the base. Raises ``ValueError`` when the result escapes ``base_dir``.
    """
    root = os.path.normpath(os.path.abspath(base_dir))
    relative = [part.lstrip("/\\") for part in parts if part]
    candidate = os.path.normpath(os.path.join(root, *relative))
    if candidate != root and not candidate.startswith(root + os.sep):
        raise ValueError(f"Path escapes base directory: {candidate}")
    return Path(candidate)
