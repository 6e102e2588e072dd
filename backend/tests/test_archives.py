"""Tests for archive verification and extraction.

Zip archives are built in the test; the 7z code path is checked by
monkeypatching run_command, so 7-Zip does not need to be installed.

See Also:
    - backend/terrapack/services/archives.py
"""

from __future__ import annotations

import io
import zipfile
from typing import TYPE_CHECKING, Any

import pytest

from terrapack.services import archives
from terrapack.utils import gdal_helpers

if TYPE_CHECKING:
    import pathlib

    from terrapack.core import config


def make_zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def test_detect_format(tmp_path: pathlib.Path) -> None:
    zipped = tmp_path / "a.zip"
    zipped.write_bytes(make_zip({"x.txt": b"x"}))
    sevenzip = tmp_path / "a.7z"
    sevenzip.write_bytes(b"7z\xbc\xaf\x27\x1c" + b"\0" * 32)
    other = tmp_path / "a.html"
    other.write_bytes(b"<html>")
    assert archives.detect_format(zipped) == "zip"
    assert archives.detect_format(sevenzip) == "7z"
    with pytest.raises(archives.ArchiveError):
        archives.detect_format(other)


def test_verify_and_extract_zip(
    tmp_path: pathlib.Path,
    settings: config.Settings,
) -> None:
    path = tmp_path / "BDTOPO.zip"
    path.write_bytes(
        make_zip(
            {
                "BDTOPO/1_DONNEES/TRANSPORT/TRONCON_DE_ROUTE.SHP": b"shp",
                "BDTOPO/1_DONNEES/BATI/BATIMENT.shp": b"shp",
            }
        )
    )
    assert archives.verify_archive(path, settings) == "zip"
    archives.extract_archive(path, tmp_path / "out", settings)
    found = archives.find_files(tmp_path / "out", "TRONCON_DE_ROUTE")
    assert [p.name for p in found] == ["TRONCON_DE_ROUTE.SHP"]


def test_verify_truncated_zip(
    tmp_path: pathlib.Path,
    settings: config.Settings,
) -> None:
    content = make_zip({"data.bin": b"0123456789" * 1000})
    path = tmp_path / "truncated.zip"
    path.write_bytes(content[: len(content) // 2])
    with pytest.raises(archives.ArchiveError):
        archives.verify_archive(path, settings)


def test_extract_rejects_path_traversal(
    tmp_path: pathlib.Path,
    settings: config.Settings,
) -> None:
    path = tmp_path / "evil.zip"
    path.write_bytes(make_zip({"../escape.txt": b"x"}))
    with pytest.raises(archives.ArchiveError, match="escapes"):
        archives.extract_archive(path, tmp_path / "out", settings)
    assert not (tmp_path / "escape.txt").exists()


def test_sevenzip_commands(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
    settings: config.Settings,
) -> None:
    calls: list[list[str]] = []

    def fake_run(command: Any, workdir: Any = None, bin_dir: Any = None) -> str:
        calls.append([str(part) for part in command])
        return ""

    monkeypatch.setattr(gdal_helpers, "run_command", fake_run)
    path = tmp_path / "BDFORET.7z"
    path.write_bytes(b"7z\xbc\xaf\x27\x1c" + b"\0" * 32)
    assert archives.verify_archive(path, settings) == "7z"
    archives.extract_archive(path, tmp_path / "out", settings)
    assert calls == [
        ["7z", "t", "-y", str(path)],
        ["7z", "x", "-y", f"-o{tmp_path / 'out'}", str(path)],
    ]


def test_sevenzip_failure_is_archive_error(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: pathlib.Path,
    settings: config.Settings,
) -> None:
    def fake_run(command: Any, workdir: Any = None, bin_dir: Any = None) -> str:
        raise gdal_helpers.CommandError("ERROR: CRC Failed")

    monkeypatch.setattr(gdal_helpers, "run_command", fake_run)
    path = tmp_path / "BDFORET.7z"
    path.write_bytes(b"7z\xbc\xaf\x27\x1c" + b"\0" * 32)
    with pytest.raises(archives.ArchiveError, match="CRC"):
        archives.verify_archive(path, settings)
