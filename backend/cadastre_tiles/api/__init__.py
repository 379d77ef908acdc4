"""API router subpackage for the cadastral tile service.

Submodules:
    - tiles: Endpoints for MVT and GeoJSON tiles and district label points.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.
"""
