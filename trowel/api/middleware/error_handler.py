"""Translate build-system errors raised during a request into JSON.

The dev server itself raises few errors: the proxy (``ServerError`` when
the backend is unreachable) is the usual source.  The body carries the
same diagnostics a build report would.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from trowel.utils.exceptions import (
    AssemblyError,
    ParseError,
    PipelineError,
    ServerError,
    TrowelError,
    ValidationError,
)
from trowel.utils.logging import get_logger

logger = get_logger(__name__)

# Most specific class wins; subclasses inherit their base's status.
_STATUS_MAP: dict[type[TrowelError], int] = {
    ServerError: 502,
    ParseError: 422,
    ValidationError: 422,
    PipelineError: 500,
    AssemblyError: 500,
}


def status_for(exc: TrowelError) -> int:
    for exc_type in type(exc).__mro__:
        if exc_type in _STATUS_MAP:
            return _STATUS_MAP[exc_type]
    return 500


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Convert :class:`TrowelError` to ``{error, detail, diagnostics}``.

    Anything else is logged with its traceback and answered with a bare 500.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        try:
            return await call_next(request)

        except TrowelError as exc:
            status_code = status_for(exc)
            logger.warning(
                "request_error",
                error_type=type(exc).__name__,
                status_code=status_code,
                detail=str(exc),
                path=request.url.path,
            )
            return JSONResponse(
                status_code=status_code,
                content={
                    "error": type(exc).__name__,
                    "detail": str(exc),
                    "diagnostics": [d.model_dump() for d in exc.diagnostics()],
                },
            )

        except Exception as exc:
            logger.error(
                "request_crashed",
                error_type=type(exc).__name__,
                path=request.url.path,
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "InternalServerError", "detail": str(exc)},
            )
