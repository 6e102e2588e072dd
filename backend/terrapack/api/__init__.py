"""API router subpackage of the terrapack service.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - projects: Creating, building and exporting projects, and streaming
      their progress as server-sent events.
    - cache: Listing and clearing the dataset cache.
"""
