"""Static serving of the published bundle with single-page-app fallback."""

from __future__ import annotations

import os

from starlette.exceptions import HTTPException
from starlette.responses import Response
from starlette.staticfiles import StaticFiles
from starlette.types import Scope


class BundleStaticFiles(StaticFiles):
    """Serve ``dist``; unknown paths get the published ``index.html``.

    The directory is resolved per request, so a bundle swapped in by
    :meth:`OutputAssembler.publish` is picked up without a restart.
    """

    def __init__(self, directory: str, index: str = "index.html") -> None:
        super().__init__(directory=directory, html=True, check_dir=False)
        self.index = index

    async def check_config(self) -> None:
        # dist only appears with the first publish; until then every path is a 404.
        if os.path.isdir(self.directory):
            await super().check_config()

    async def get_response(self, path: str, scope: Scope) -> Response:
        try:
            return await super().get_response(path, scope)
        except HTTPException as exc:
            if exc.status_code != 404 or scope["method"] not in ("GET", "HEAD"):
                raise
        return await super().get_response(self.index, scope)
