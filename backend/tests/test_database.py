"""Tests for the project store repositories.

This module contains unit tests for the project store abstractions:
- InMemoryProjectRepository: used by the other test modules.
- FileProjectRepository: the default store, one JSON record per project.
- PostgresProjectRepository: row conversion only; no database is needed.

All tests are self-contained and do not require a running database.
"""

from __future__ import annotations

import datetime
import json
from typing import TYPE_CHECKING

import pytest

from terrapack.core import config
from terrapack.db import database
from terrapack.db import models as db_models

if TYPE_CHECKING:
    import pathlib


def _project(aoi: db_models.AreaOfInterest, name: str = "demo") -> db_models.Project:
    return db_models.Project(name=name, aoi=aoi, regions=["77", "91"])


def test_in_memory_repository_add_and_get(aoi: db_models.AreaOfInterest) -> None:
    """Test adding and retrieving a project from the in-memory repository."""
    repo = database.InMemoryProjectRepository()
    project = _project(aoi)
    result = repo.add(project)
    assert result is project
    found = repo.get(project.id)
    assert found is not None
    assert found.to_dict() == project.to_dict()
    assert repo.get("nonexistent") is None


def test_in_memory_repository_returns_copies(aoi: db_models.AreaOfInterest) -> None:
    """Mutating a stored project has no effect until it is added again."""
    repo = database.InMemoryProjectRepository()
    project = repo.add(_project(aoi))
    project.status = "ready"
    stored = repo.get(project.id)
    assert stored is not None
    assert stored.status == "building"


def test_in_memory_repository_all(aoi: db_models.AreaOfInterest) -> None:
    repo = database.InMemoryProjectRepository()
    first = repo.add(_project(aoi, "one"))
    second = repo.add(_project(aoi, "two"))
    assert {p.id for p in repo.all()} == {first.id, second.id}


def test_file_repository_persists_records(
    tmp_path: pathlib.Path,
    aoi: db_models.AreaOfInterest,
) -> None:
    """Records survive a new repository instance on the same directory."""
    project = _project(aoi)
    database.FileProjectRepository(tmp_path).add(project)
    record = tmp_path / project.id / "project.json"
    assert json.loads(record.read_text(encoding="utf-8"))["name"] == "demo"

    reopened = database.FileProjectRepository(tmp_path)
    found = reopened.get(project.id)
    assert found is not None
    assert found.regions == ["77", "91"]
    assert list(record.parent.glob("*.tmp")) == []


def test_file_repository_all_newest_first(
    tmp_path: pathlib.Path,
    aoi: db_models.AreaOfInterest,
) -> None:
    repo = database.FileProjectRepository(tmp_path)
    old = _project(aoi, "old")
    old.created_at = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    new = _project(aoi, "new")
    new.created_at = datetime.datetime(2025, 1, 1, tzinfo=datetime.UTC)
    repo.add(old)
    repo.add(new)
    (tmp_path / "broken").mkdir()
    (tmp_path / "broken" / "project.json").write_text("{", encoding="utf-8")
    assert [p.name for p in repo.all()] == ["new", "old"]


def test_file_repository_missing_project(tmp_path: pathlib.Path) -> None:
    assert database.FileProjectRepository(tmp_path).get("missing") is None


def test_postgres_repository_to_row(aoi: db_models.AreaOfInterest) -> None:
    """Test converting a Project to a database row dictionary."""
    project = _project(aoi)
    project.export_path = "/exports/demo.zip"
    row = database.PostgresProjectRepository._to_row(project)
    assert row["id"] == project.id
    assert row["status"] == "building"
    assert row["aoi_minx"] == 650000.0
    assert row["aoi_maxy"] == 6875000.0
    assert row["export_path"] == "/exports/demo.zip"
    assert row["record"].adapted == project.to_dict()  # type: ignore[attr-defined]


def test_postgres_repository_from_row(aoi: db_models.AreaOfInterest) -> None:
    """JSONB records decode both as dictionaries and as text."""
    project = _project(aoi)
    as_dict = {"record": project.to_dict(), "created_at": project.created_at}
    as_text = {"record": json.dumps(project.to_dict())}
    for row in (as_dict, as_text):
        restored = database.PostgresProjectRepository._from_row(row)
        assert restored.id == project.id
        assert restored.aoi == aoi


def test_get_project_repository_file(settings: config.Settings) -> None:
    repo = database.get_project_repository(settings)
    assert isinstance(repo, database.FileProjectRepository)
    assert repo.root == settings.projects_dir


def test_get_project_repository_postgres(monkeypatch: pytest.MonkeyPatch) -> None:
    """Factory returns the PostgreSQL repository when configured."""

    class FakeRepo(database.PostgresProjectRepository):
        def __init__(self, settings: config.Settings):
            self.settings = settings

    monkeypatch.setattr(database, "PostgresProjectRepository", FakeRepo)
    settings = config.Settings(project_store="postgres")
    repo = database.get_project_repository(settings)
    assert isinstance(repo, FakeRepo)
