"""Pass-through proxy forwarding a path prefix to an external backend."""

from __future__ import annotations

import httpx
from fastapi import Request
from starlette.responses import Response

from trowel.utils.exceptions import ServerError
from trowel.utils.logging import get_logger

logger = get_logger(__name__)

_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
}

# httpx already decoded the body, so these no longer describe it.
_STALE_RESPONSE_HEADERS = {"content-encoding", "content-length"}


class ProxyHandler:
    """Forward every request under :attr:`path` to *backend*.

    The mount path is *rewrite* when given, else the backend URL's own
    path.  The remainder of the request path is appended to the backend
    URL; query string, method, body and end-to-end headers go through
    unchanged.
    """

    def __init__(
        self,
        backend: str,
        rewrite: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.backend = httpx.URL(backend)
        self.path = "/" + (rewrite or self.backend.path).strip("/")
        if self.path == "/":
            raise ServerError(f"proxy for {backend} would shadow the whole site; set a rewrite path")
        self.client = client or httpx.AsyncClient(timeout=None, follow_redirects=False)

    def target_url(self, rest: str, query: str = "") -> str:
        url = str(self.backend.copy_with(query=None)).rstrip("/")
        if rest:
            url = f"{url}/{rest.lstrip('/')}"
        return f"{url}?{query}" if query else url

    async def forward(self, request: Request, rest: str = "") -> Response:
        target = self.target_url(rest, request.url.query)
        headers = {
            name: value
            for name, value in request.headers.items()
            if name.lower() not in _HOP_BY_HOP
        }
        body = await request.body()
        try:
            upstream = await self.client.request(
                request.method,
                target,
                headers=headers,
                content=body,
            )
        except httpx.HTTPError as exc:
            raise ServerError(f"proxy request to {target} failed: {exc}") from exc

        logger.debug("proxied", method=request.method, target=target, status=upstream.status_code)
        response_headers = {
            name: value
            for name, value in upstream.headers.items()
            if name.lower() not in _HOP_BY_HOP and name.lower() not in _STALE_RESPONSE_HEADERS
        }
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers=response_headers,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
