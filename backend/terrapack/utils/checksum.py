"""Shared checksum utilities."""

from __future__ import annotations

import hashlib
import pathlib

_CHUNK_SIZE = 1024 * 1024  # 1 MB


def file_sha256(path: pathlib.Path) -> str:
    """Calculate the SHA-256 checksum of a file."""
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while chunk := fh.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def tree_fingerprint(root: pathlib.Path) -> str:
    """Fingerprint a directory tree from its relative paths and file sizes.

    Cheap enough to run on every cache lookup: file contents are not read,
    so a truncated or deleted file changes the fingerprint while an
    unchanged tree always yields the same digest.
    """
    digest = hashlib.sha256()
    files = sorted(p for p in root.rglob("*") if p.is_file())
    for path in files:
        relative = path.relative_to(root).as_posix()
        digest.update(relative.encode("utf-8"))
        digest.update(b"\0")
        digest.update(str(path.stat().st_size).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()
