"""Filesystem watcher producing debounced rebuild requests.

watchdog delivers raw events on its observer thread; they are handed to
the event loop with ``call_soon_threadsafe`` and coalesced by a
:class:`Debouncer` into :class:`RebuildRequest` batches.
"""

from __future__ import annotations

import asyncio
import os
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from trowel.core.models import RebuildRequest
from trowel.utils.exceptions import WatchError
from trowel.utils.logging import get_logger

logger = get_logger("engine.watcher")

# Events that never change file content.
_IGNORED_EVENT_TYPES = {"opened", "closed", "closed_no_write"}

SUPERVISE_INTERVAL_SECONDS = 1.0


class DebounceState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSH = "flush"


class Debouncer:
    """Merge bursts of changed paths into single requests.

    ``Idle`` waits for a first path; ``Accumulating`` keeps collecting
    until *window* seconds pass with no new path; ``Flush`` emits the
    union of everything collected and returns to ``Idle``.
    """

    def __init__(self, window: float) -> None:
        self.window = window
        self.state = DebounceState.IDLE
        self._pending: set[Path] = set()

    async def next_request(self, events: asyncio.Queue) -> RebuildRequest:
        self.state = DebounceState.IDLE
        self._pending = {await events.get()}

        self.state = DebounceState.ACCUMULATING
        while True:
            try:
                path = await asyncio.wait_for(events.get(), self.window)
            except asyncio.TimeoutError:
                break
            self._pending.add(path)

        self.state = DebounceState.FLUSH
        request = RebuildRequest(paths=frozenset(self._pending))
        self._pending = set()
        self.state = DebounceState.IDLE
        return request


class _ChangeHandler(FileSystemEventHandler):
    """Forward relevant watchdog events to an asyncio queue."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue,
        is_ignored: Callable[[Path], bool],
    ) -> None:
        self.loop = loop
        self.queue = queue
        self.is_ignored = is_ignored

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENT_TYPES:
            return
        if event.is_directory and event.event_type == "modified":
            return

        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)

        for raw in paths:
            path = Path(os.fsdecode(raw)).absolute()
            if self.is_ignored(path):
                continue
            try:
                self.loop.call_soon_threadsafe(self.queue.put_nowait, path)
            except RuntimeError:
                # Loop already closed during shutdown.
                return


class FileWatcher:
    """Watch *paths* recursively and yield debounced rebuild requests.

    Parameters
    ----------
    paths:
        Directories (or files) to observe.
    ignore:
        Paths whose changes are dropped, typically the output and staging
        directories so publishing never re-triggers a build.
    debounce_seconds:
        Quiet period that closes a batch.
    observer_factory:
        Callable returning a watchdog observer; tests may pass the polling
        observer.
    """

    def __init__(
        self,
        paths: list[Path],
        ignore: list[Path] | None = None,
        debounce_seconds: float = 1.0,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self.paths = [Path(p).resolve() for p in paths]
        self.ignore = [Path(p).resolve() for p in (ignore or [])]
        self.debounce_seconds = debounce_seconds
        self.observer_factory = observer_factory
        self._observer: BaseObserver | None = None

    def is_ignored(self, path: Path) -> bool:
        return any(path == ignored or ignored in path.parents for ignored in self.ignore)

    async def watch(self) -> AsyncIterator[RebuildRequest]:
        """Yield requests forever; closing the generator releases the OS subscription.

        Raises :class:`WatchError` if the subscription cannot be set up.
        Each call starts a fresh subscription, so the sequence is
        restartable.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        handler = _ChangeHandler(loop, queue, self.is_ignored)

        self._observer = self._start_observer(handler)
        supervisor = asyncio.create_task(self._supervise(handler))
        debouncer = Debouncer(self.debounce_seconds)
        logger.info("watch_started", paths=[str(p) for p in self.paths])
        try:
            while True:
                request = await debouncer.next_request(queue)
                logger.info("watch_batch", changed=len(request.paths))
                yield request
        finally:
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)
            await asyncio.to_thread(self._stop_observer)
            logger.info("watch_stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_observer(self, handler: _ChangeHandler) -> BaseObserver:
        observer = self.observer_factory()
        try:
            for path in self.paths:
                if not path.exists():
                    raise WatchError(f"watch path does not exist: {path}")
                observer.schedule(handler, str(path), recursive=path.is_dir())
            observer.start()
        except WatchError:
            raise
        except OSError as exc:
            raise WatchError(f"failed to watch {', '.join(map(str, self.paths))}: {exc}") from exc
        return observer

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()

    async def _supervise(self, handler: _ChangeHandler) -> None:
        """Restart the observer if its thread dies during steady-state operation."""
        while True:
            await asyncio.sleep(SUPERVISE_INTERVAL_SECONDS)
            if self._observer is not None and self._observer.is_alive():
                continue
            logger.error("watch_error", detail="observer thread stopped; restarting")
            try:
                await asyncio.to_thread(self._stop_observer)
                self._observer = self._start_observer(handler)
            except WatchError as exc:
                logger.error("watch_restart_failed", error=str(exc))
