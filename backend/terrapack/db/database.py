"""Project store: repositories persisting Project records."""

from __future__ import annotations

import datetime
import json
import logging
import os
import tempfile
import threading
from typing import TYPE_CHECKING, Any, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from terrapack.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

    from terrapack.core import config

logger = logging.getLogger(__name__)


class ProjectRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving projects.

    Implementations persist Project records including their layers,
    supporting in-memory (testing), JSON file (desktop/default) and
    PostgreSQL backends.
    """

    def add(self, project: db_models.Project) -> db_models.Project: ...

    def get(self, project_id: str) -> db_models.Project | None: ...

    def all(self) -> Iterable[db_models.Project]: ...


class InMemoryProjectRepository(ProjectRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Records are stored as serialized dictionaries so callers never share a
    mutable Project instance with the store. Data is lost when the process
    exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory repository."""
        self._store: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add(self, project: db_models.Project) -> db_models.Project:
        """Add or replace a project in the repository.

        Args:
            project: Project to store.

        Returns:
            The stored project.
        """
        with self._lock:
            self._store[project.id] = project.to_dict()
        return project

    def get(self, project_id: str) -> db_models.Project | None:
        """Retrieve a project by ID.

        Args:
            project_id: Unique identifier for the project.

        Returns:
            Project if found, None otherwise.
        """
        with self._lock:
            data = self._store.get(project_id)
        return db_models.Project.from_dict(data) if data else None

    def all(self) -> Iterable[db_models.Project]:
        """Get all stored projects.

        Returns:
            Iterable of all projects in the repository.
        """
        with self._lock:
            records = list(self._store.values())
        return [db_models.Project.from_dict(data) for data in records]


class FileProjectRepository(ProjectRepositoryProtocol):
    """JSON-file repository, one ``<id>/project.json`` per project.

    Writes go to a temporary file in the project directory which then
    replaces the record, so a crash never leaves a truncated record.
    """

    RECORD_NAME = "project.json"

    def __init__(self, root: pathlib.Path) -> None:
        """Initialize repository rooted at a directory.

        Args:
            root: Directory holding one subdirectory per project.
        """
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _record_path(self, project_id: str) -> pathlib.Path:
        return self.root / project_id / self.RECORD_NAME

    def add(self, project: db_models.Project) -> db_models.Project:
        target = self._record_path(project.id)
        target.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            delete=False,
            dir=target.parent,
            suffix=".tmp",
        ) as tmp:
            json.dump(project.to_dict(), tmp, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, target)
        return project

    def get(self, project_id: str) -> db_models.Project | None:
        path = self._record_path(project_id)
        if not path.is_file():
            return None
        with path.open(encoding="utf-8") as fh:
            return db_models.Project.from_dict(json.load(fh))

    def all(self) -> Iterable[db_models.Project]:
        projects = []
        for path in sorted(self.root.glob(f"*/{self.RECORD_NAME}")):
            try:
                with path.open(encoding="utf-8") as fh:
                    projects.append(db_models.Project.from_dict(json.load(fh)))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Skipping unreadable project %s: %s", path, exc)
        projects.sort(key=lambda p: p.created_at, reverse=True)
        return projects


class PostgresProjectRepository(ProjectRepositoryProtocol):
    """PostgreSQL-backed repository for projects.

    Stores the searchable columns (name, status, AOI corners, timestamps)
    alongside the full record as JSONB. Creates the table on
    initialization.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS projects (
      id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      status TEXT NOT NULL,
      aoi_minx DOUBLE PRECISION NOT NULL,
      aoi_miny DOUBLE PRECISION NOT NULL,
      aoi_maxx DOUBLE PRECISION NOT NULL,
      aoi_maxy DOUBLE PRECISION NOT NULL,
      record JSONB NOT NULL,
      export_path TEXT,
      created_at TIMESTAMPTZ DEFAULT now()
    );
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        return psycopg2.connect(self.settings.database_url)

    def _ensure_schema(self) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.CREATE_TABLE_SQL)
            conn.commit()

    def add(self, project: db_models.Project) -> db_models.Project:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO projects (
                    id, name, status, aoi_minx, aoi_miny, aoi_maxx, aoi_maxy,
                    record, export_path, created_at
                ) VALUES (%(id)s, %(name)s, %(status)s, %(aoi_minx)s,
                    %(aoi_miny)s, %(aoi_maxx)s, %(aoi_maxy)s, %(record)s,
                    %(export_path)s, %(created_at)s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    status = EXCLUDED.status,
                    record = EXCLUDED.record,
                    export_path = EXCLUDED.export_path;
                """,
                self._to_row(project),
            )
            conn.commit()
        return project

    def get(self, project_id: str) -> db_models.Project | None:
        with (
            self._connection() as conn,
            conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur,
        ):
            cur.execute("SELECT * FROM projects WHERE id = %s", (project_id,))
            row = cur.fetchone()
            if row is None:
                return None
            return self._from_row(cast(dict[str, object], row))

    def all(self) -> Iterable[db_models.Project]:
        with (
            self._connection() as conn,
            conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur,
        ):
            cur.execute("SELECT * FROM projects ORDER BY created_at DESC")
            for row in cur.fetchall():
                yield self._from_row(cast(dict[str, object], row))

    @staticmethod
    def _to_row(project: db_models.Project) -> dict[str, object]:
        """Convert a Project to a database row dictionary.

        Args:
            project: Project to convert.

        Returns:
            Dictionary suitable for parameterized SQL insertion.
        """
        xmin, ymin, xmax, ymax = project.aoi.bounds
        return {
            "id": project.id,
            "name": project.name,
            "status": project.status,
            "aoi_minx": xmin,
            "aoi_miny": ymin,
            "aoi_maxx": xmax,
            "aoi_maxy": ymax,
            "record": psycopg2.extras.Json(project.to_dict()),
            "export_path": project.export_path,
            "created_at": project.created_at,
        }

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.Project:
        """Convert a database row dictionary to a Project.

        The JSONB record is authoritative; it is decoded by psycopg2 into a
        dictionary, or arrives as text with older drivers.

        Args:
            row: Dictionary from database query result.

        Returns:
            Project with all fields populated.
        """
        record = row["record"]
        if isinstance(record, (str, bytes)):
            record = json.loads(record)
        data = dict(cast(dict[str, Any], record))
        created_at = row.get("created_at")
        if "created_at" not in data and isinstance(
            created_at, datetime.datetime
        ):
            data["created_at"] = created_at.isoformat()
        return db_models.Project.from_dict(data)


def get_project_repository(
    settings: config.Settings,
) -> ProjectRepositoryProtocol:
    """Factory function to create the configured project repository.

    Args:
        settings: Application settings selecting the store.

    Returns:
        PostgresProjectRepository when ``project_store`` is "postgres",
        FileProjectRepository under ``projects_dir`` otherwise.
    """
    if settings.project_store == "postgres":
        return PostgresProjectRepository(settings)
    return FileProjectRepository(settings.projects_dir)
