"""Application factory and the build / watch / serve runners."""

from __future__ import annotations

import asyncio
import socket
import webbrowser
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from trowel.api.livereload import ReloadHub
from trowel.api.middleware.error_handler import ErrorHandlerMiddleware
from trowel.api.middleware.logging_middleware import LoggingMiddleware
from trowel.api.proxy import ProxyHandler
from trowel.api.router import internal_router
from trowel.api.static import BundleStaticFiles
from trowel.config import Settings, settings as default_settings
from trowel.core.context import BuildContext
from trowel.core.models import BuildReport
from trowel.engine.orchestrator import BuildOrchestrator
from trowel.engine.watcher import FileWatcher
from trowel.utils.exceptions import ServerError
from trowel.utils.logging import get_logger

logger = get_logger("main")

INTERNAL_PREFIX = "/_trowel"

_PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("server_started", proxies=[p.path for p in app.state.proxies])

    yield

    for proxy in app.state.proxies:
        await proxy.aclose()
    logger.info("server_stopped")


def create_app(
    settings: Settings | None = None,
    hub: ReloadHub | None = None,
    orchestrator: BuildOrchestrator | None = None,
) -> FastAPI:
    settings = settings or default_settings
    context = orchestrator.context if orchestrator else BuildContext.from_settings(settings)

    app = FastAPI(
        title="trowel dev server",
        description="Serves the published bundle with live reload",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.reload_hub = hub or ReloadHub()
    app.state.orchestrator = orchestrator
    app.state.proxies = [
        ProxyHandler(proxy.backend, proxy.rewrite) for proxy in settings.all_proxies()
    ]

    # Middleware is applied in reverse order -- outermost first.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)

    app.include_router(internal_router, prefix=INTERNAL_PREFIX)
    for proxy in app.state.proxies:
        _add_proxy_routes(app, proxy)
        logger.info("proxy_configured", path=proxy.path, backend=str(proxy.backend))

    # Routes are matched in order, so the catch-all mount comes last.
    app.mount(
        context.public_url.rstrip("/") or "/",
        BundleStaticFiles(str(context.dist), index=context.template.name),
        name="bundle",
    )
    return app


def _add_proxy_routes(app: FastAPI, proxy: ProxyHandler) -> None:
    async def forward(request: Request):
        rest = request.url.path[len(proxy.path):]
        return await proxy.forward(request, rest)

    app.add_api_route(proxy.path, forward, methods=_PROXY_METHODS, include_in_schema=False)
    app.add_api_route(
        proxy.path + "/{rest:path}", forward, methods=_PROXY_METHODS, include_in_schema=False
    )


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


def _watcher_for(context: BuildContext) -> FileWatcher:
    return FileWatcher(
        context.watch_paths(),
        ignore=context.ignored_paths(),
        debounce_seconds=context.debounce_seconds,
    )


async def run_build(settings: Settings) -> BuildReport:
    """Build once and publish; the report says whether it worked."""
    orchestrator = BuildOrchestrator(BuildContext.from_settings(settings))
    try:
        return await orchestrator.build_once()
    finally:
        await orchestrator.shutdown()


async def run_watch(settings: Settings) -> None:
    """Build, then rebuild on every debounced change until cancelled."""
    context = BuildContext.from_settings(settings)
    orchestrator = BuildOrchestrator(context)
    try:
        await orchestrator.run(_watcher_for(context).watch())
    finally:
        await orchestrator.shutdown()


def _bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET6 if ":" in host else socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as exc:
        sock.close()
        raise ServerError(f"cannot listen on {host}:{port}: {exc}") from exc
    sock.set_inheritable(True)
    return sock


def _open_browser(url: str) -> None:
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as exc:
        logger.warning("browser_open_failed", url=url, error=str(exc))
        return
    if not opened:
        logger.warning("browser_open_failed", url=url, error="no usable browser")


async def run_serve(settings: Settings) -> None:
    """Watch, rebuild and serve the bundle with live reload.

    Failing to bind the listening socket or to start the watcher is fatal
    and raised to the caller; build failures are not.
    """
    context = BuildContext.from_settings(settings, serving=True)
    hub = ReloadHub()
    orchestrator = BuildOrchestrator(context)
    orchestrator.add_listener(hub.on_build_event)

    app = create_app(settings, hub=hub, orchestrator=orchestrator)
    sock = _bind_socket(settings.host, settings.port)
    server = uvicorn.Server(uvicorn.Config(app, log_config=None))

    watch_task = asyncio.create_task(orchestrator.run(_watcher_for(context).watch()))
    url = f"http://{settings.host}:{sock.getsockname()[1]}{context.public_url}"
    logger.info("serving", url=url, dist=str(context.dist))
    if settings.open:
        await asyncio.to_thread(_open_browser, url)
    try:
        serve_task = asyncio.create_task(server.serve(sockets=[sock]))
        done, _ = await asyncio.wait({serve_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
        if watch_task in done and not watch_task.cancelled() and watch_task.exception():
            # Watcher startup failure is fatal.
            server.should_exit = True
            await serve_task
            raise watch_task.exception()
        if serve_task in done:
            serve_task.result()
    finally:
        watch_task.cancel()
        await asyncio.gather(watch_task, return_exceptions=True)
        await orchestrator.shutdown()
        sock.close()
