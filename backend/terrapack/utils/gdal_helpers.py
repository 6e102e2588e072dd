"""Safe execution wrapper for GDAL/OGR and archive command-line utilities.

This module runs command-line tools (ogr2ogr, gdal_translate, 7z) as
subprocesses. Executables are looked up in the configured GDAL install
directory first, then on PATH, so a bundled GDAL can be used without
touching the environment.

Non-zero exit codes result in CommandError exceptions carrying the
command's stderr output. check_dependencies() reports missing tools up
front, at application startup and from the health endpoint.

Example:
    Convert a shapefile to a GeoPackage in Lambert-93:
        >>> from terrapack.utils.gdal_helpers import run_command, CommandError

        >>> try:
        ...     run_command([
        ...         "ogr2ogr",
        ...         "-f", "GPKG",
        ...         "-t_srs", "EPSG:2154",
        ...         "out.gpkg",
        ...         "BATIMENT.shp",
        ...     ])
        ... except CommandError as e:
        ...     print(f"Command failed: {e}")
"""

from __future__ import annotations

import logging
import pathlib
import shutil
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from terrapack.core import config

logger = logging.getLogger(__name__)

GDAL_TOOLS = ("ogr2ogr", "gdal_translate")


class CommandError(RuntimeError):
    """Exception raised when a subprocess command fails.

    Contains the error message from the failed command's stderr output.
    Raised when any GDAL/OGR or archive command exits with a non-zero
    status code, or when the executable cannot be found.

    Example:
        Handle command failures:
            >>> try:
            ...     run_command(["gdal_translate", "-of", "GTiff", ...])
            ... except CommandError as e:
            ...     print(f"GDAL command failed: {e}")
    """


def resolve_executable(
    name: str,
    bin_dir: pathlib.Path | None = None,
) -> str:
    """Locate an executable in ``bin_dir`` or on PATH.

    Args:
        name: Executable name, e.g. "ogr2ogr".
        bin_dir: Optional install directory searched first.

    Returns:
        Absolute path of the executable when found, ``name`` otherwise so
        the subprocess reports the missing tool.
    """
    return find_executable(name, bin_dir) or name


def find_executable(
    name: str,
    bin_dir: pathlib.Path | None = None,
) -> str | None:
    """Return the path of an executable, or None when it is not installed."""
    if bin_dir is not None:
        for candidate in (bin_dir / name, bin_dir / f"{name}.exe"):
            if candidate.is_file():
                return str(candidate)
    return shutil.which(name)


def check_dependencies(settings: config.Settings) -> dict[str, str | None]:
    """Locate the external tools the pipeline shells out to.

    Args:
        settings: Settings holding the GDAL directory and 7-Zip executable.

    Returns:
        Path of each tool (ogr2ogr, gdal_translate, 7z), None when missing.
        Missing tools are logged as errors.

    Example:
        >>> missing = [
        ...     name for name, path in check_dependencies(settings).items()
        ...     if path is None
        ... ]
    """
    found = {
        name: find_executable(name, settings.gdal_bin_dir)
        for name in GDAL_TOOLS
    }
    found["7z"] = find_executable(settings.sevenzip_executable)
    for name, path in found.items():
        if path is None:
            logger.error("Required tool %s is not installed", name)
        else:
            logger.debug("Found %s at %s", name, path)
    return found


def run_command(
    command: Iterable[str | pathlib.Path],
    workdir: pathlib.Path | None = None,
    bin_dir: pathlib.Path | None = None,
) -> str:
    """Execute a command and raise on non-zero exit.

    Args:
        command: Iterable arguments to execute (e.g., ["ogr2ogr", "-f", ...]).
            The first item is resolved through resolve_executable().
        workdir: Optional working directory for the command execution.
        bin_dir: Optional directory holding the executable.

    Returns:
        The command's standard output.

    Raises:
        CommandError: if the command exits with a non-zero status code or
            cannot be started. The message contains the stderr output.

    Example:
        Translate a WMS description into a GeoTIFF:
            >>> run_command(
            ...     ["gdal_translate", "-of", "GTiff", "wms.xml", "ortho.tif"],
            ...     workdir=pathlib.Path("/tmp"),
            ... )
    """
    args = [str(part) for part in command]
    args[0] = resolve_executable(args[0], bin_dir)
    logger.debug("Running %s", " ".join(args))
    try:
        result = subprocess.run(
            args,
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(f"Cannot run {args[0]}: {exc}") from exc
    if result.returncode != 0:
        raise CommandError(result.stderr.strip() or "Unknown command failure")
    return result.stdout
