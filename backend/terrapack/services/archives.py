"""Verification and extraction of downloaded source archives.

IGN distributes its datasets as 7-Zip archives; some mirrors serve zip
files. The format is detected from the file signature, zip archives are
handled with ``zipfile`` and 7-Zip archives with the ``7z`` command-line
tool through gdal_helpers.run_command.
"""

from __future__ import annotations

import logging
import pathlib
import zipfile
from typing import TYPE_CHECKING, Literal

from terrapack.utils import gdal_helpers

if TYPE_CHECKING:
    from terrapack.core import config

logger = logging.getLogger(__name__)

ArchiveFormat = Literal["zip", "7z"]

_SIGNATURES: dict[bytes, ArchiveFormat] = {
    b"PK\x03\x04": "zip",
    b"7z\xbc\xaf\x27\x1c": "7z",
}


class ArchiveError(RuntimeError):
    """The archive is truncated, corrupt or of an unknown format."""


def detect_format(path: pathlib.Path) -> ArchiveFormat:
    """Identify an archive from its leading bytes.

    Raises:
        ArchiveError: if the signature is not zip or 7z.
    """
    with path.open("rb") as fh:
        head = fh.read(6)
    for signature, name in _SIGNATURES.items():
        if head.startswith(signature):
            return name
    raise ArchiveError(f"{path.name} is not a zip or 7z archive")


def _sevenzip(settings: config.Settings) -> str:
    return settings.sevenzip_executable


def verify_archive(path: pathlib.Path, settings: config.Settings) -> ArchiveFormat:
    """Check that an archive is well formed and every member is readable.

    Args:
        path: Archive to test.
        settings: Settings naming the 7z executable.

    Returns:
        The detected archive format.

    Raises:
        ArchiveError: if the archive fails its integrity test.
    """
    fmt = detect_format(path)
    if fmt == "zip":
        try:
            with zipfile.ZipFile(path) as archive:
                bad = archive.testzip()
        except zipfile.BadZipFile as exc:
            raise ArchiveError(f"{path.name}: {exc}") from exc
        if bad is not None:
            raise ArchiveError(f"{path.name}: corrupt member {bad}")
    else:
        try:
            gdal_helpers.run_command([_sevenzip(settings), "t", "-y", path])
        except gdal_helpers.CommandError as exc:
            raise ArchiveError(f"{path.name}: {exc}") from exc
    return fmt


def extract_archive(
    path: pathlib.Path,
    destination: pathlib.Path,
    settings: config.Settings,
) -> None:
    """Extract an archive into a directory.

    Zip members escaping the destination (absolute paths or ``..``) are
    rejected.

    Raises:
        ArchiveError: if extraction fails.
    """
    destination.mkdir(parents=True, exist_ok=True)
    fmt = detect_format(path)
    if fmt == "zip":
        root = destination.resolve()
        try:
            with zipfile.ZipFile(path) as archive:
                for member in archive.namelist():
                    target = (destination / member).resolve()
                    if not target.is_relative_to(root):
                        raise ArchiveError(
                            f"{path.name}: member {member} escapes the "
                            "extraction directory"
                        )
                archive.extractall(destination)
        except zipfile.BadZipFile as exc:
            raise ArchiveError(f"{path.name}: {exc}") from exc
    else:
        try:
            gdal_helpers.run_command(
                [_sevenzip(settings), "x", "-y", f"-o{destination}", path]
            )
        except gdal_helpers.CommandError as exc:
            raise ArchiveError(f"{path.name}: {exc}") from exc
    logger.debug("Extracted %s into %s", path.name, destination)


def find_files(
    root: pathlib.Path,
    stem: str,
    suffix: str = ".shp",
) -> list[pathlib.Path]:
    """Find files named ``<stem><suffix>`` anywhere below a directory.

    IGN archives nest their shapefiles under dated theme folders, so
    matching is on the base name only, case-insensitively.

    Returns:
        Matching paths sorted for a stable order.
    """
    wanted = f"{stem}{suffix}".lower()
    return sorted(
        p for p in root.rglob("*") if p.is_file() and p.name.lower() == wanted
    )
