"""Project store interfaces and repository abstractions.

Re-exports ProjectRepositoryProtocol and the repository constructors from
terrapack.db.database so services and FastAPI dependencies have a single
import location.

Example:
    Use in a service or FastAPI dependency:
        >>> from terrapack.db import get_project_repository
        >>> repo = get_project_repository(settings)
"""

from terrapack.db.database import (
    FileProjectRepository,
    InMemoryProjectRepository,
    PostgresProjectRepository,
    ProjectRepositoryProtocol,
    get_project_repository,
)

__all__ = [
    "FileProjectRepository",
    "InMemoryProjectRepository",
    "PostgresProjectRepository",
    "ProjectRepositoryProtocol",
    "get_project_repository",
]
