from fastapi import APIRouter

from trowel.api.endpoints import reload, status

# Mounted under the reserved /_trowel prefix so it cannot collide with
# bundle content.
internal_router = APIRouter()
internal_router.include_router(status.router, tags=["status"])
internal_router.include_router(reload.router, tags=["live-reload"])
