"""Dataset cache API endpoints."""

from __future__ import annotations

from typing import Any

import fastapi

from terrapack.api import projects
from terrapack.services import runtime as services_runtime

router = fastapi.APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("")
async def list_entries(
    runtime: services_runtime.Runtime = fastapi.Depends(projects._get_runtime),  # noqa: B008
) -> list[dict[str, Any]]:
    """List the cache entries currently valid on disk."""
    return [entry.to_dict() for entry in runtime.cache.entries()]


@router.delete("")
async def clear_cache(
    runtime: services_runtime.Runtime = fastapi.Depends(projects._get_runtime),  # noqa: B008
) -> dict[str, bool]:
    """Remove every cached dataset.

    Waits for in-flight acquisitions; the next build downloads again.
    """
    await runtime.cache.clear()
    return {"cleared": True}
