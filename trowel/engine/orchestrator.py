"""Build orchestrator -- the generation state machine.

States and transitions::

    Idle        + rebuild        -> Building(g+1)
    Building(g) + rebuild        -> cancel g, discard its work -> Building(g+1)
    Building(g) + all succeeded  -> Succeeded(g) -> assemble, publish, notify -> Idle
    Building(g) + any failure    -> Failed(g, error) -> report, notify -> Idle

The current generation is owned here and nowhere else.  Each generation
runs in its own task; the control loop only starts and cancels them, and
a superseded generation is fully wound down (subprocesses terminated,
staging removed) before the next one starts, so publishes always happen
in generation order.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterator, Awaitable, Callable

import aiofiles  # type: ignore[import-untyped]

from trowel.core.context import BuildContext
from trowel.core.generation import BuildGeneration
from trowel.core.models import BuildEvent, BuildReport, BuildState, BuildStatus, RebuildRequest
from trowel.engine.executor import PipelineExecutor
from trowel.output.assembler import OutputAssembler
from trowel.parsers.html_parser import ManifestParser
from trowel.utils.exceptions import Diagnostic, GenerationCancelled, ParseError, TrowelError
from trowel.utils.logging import get_logger

BuildListener = Callable[[BuildEvent], Awaitable[None]]

logger = get_logger("engine.orchestrator")


class BuildOrchestrator:
    """Tie parser, executor and assembler together, one generation at a time.

    Parameters
    ----------
    context:
        The project's :class:`BuildContext`.
    executor:
        Defaults to a :class:`PipelineExecutor` over the full registry.
    assembler:
        Defaults to an :class:`OutputAssembler` for *context*.
    """

    def __init__(
        self,
        context: BuildContext,
        executor: PipelineExecutor | None = None,
        assembler: OutputAssembler | None = None,
        parser: ManifestParser | None = None,
    ) -> None:
        self.context = context
        self.executor = executor or PipelineExecutor(context)
        self.assembler = assembler or OutputAssembler(context)
        self.parser = parser or ManifestParser()

        self.status = BuildStatus()
        self.report = BuildReport()
        self.history: deque[BuildStatus] = deque(maxlen=256)

        self._last_id = 0
        self._generation: BuildGeneration | None = None
        self._build_task: asyncio.Task | None = None
        self._listeners: list[BuildListener] = []
        self._events: asyncio.Queue | None = None
        self._dispatcher: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def generation(self) -> BuildGeneration | None:
        return self._generation

    def add_listener(self, listener: BuildListener) -> None:
        """Register an async callback for :class:`BuildEvent` notifications."""
        self._listeners.append(listener)

    async def request_rebuild(self, request: RebuildRequest | None = None) -> BuildGeneration:
        """Start a new generation, superseding any that is still building."""
        self._ensure_dispatcher()
        await self._supersede()

        self._last_id += 1
        generation = BuildGeneration(self._last_id)
        self._generation = generation
        self._transition(BuildState.BUILDING, generation.id)
        self._emit(BuildEvent(kind="building", generation=generation.id))
        logger.info(
            "generation_start",
            generation=generation.id,
            changed=sorted(str(p) for p in request.paths) if request else [],
        )
        self._build_task = asyncio.create_task(
            self._run_generation(generation),
            name=f"generation-{generation.id}",
        )
        return generation

    async def wait_idle(self) -> None:
        """Wait for the current generation, and its notifications, to finish."""
        if self._build_task is not None:
            await asyncio.gather(self._build_task, return_exceptions=True)
        if self._events is not None:
            await self._events.join()

    async def build_once(self) -> BuildReport:
        """Run a single generation to completion and return its report."""
        await self.request_rebuild()
        await self.wait_idle()
        return self.report

    async def run(self, requests: AsyncIterator[RebuildRequest]) -> None:
        """Control loop: initial build, then one generation per request."""
        await self.request_rebuild()
        async for request in requests:
            await self.request_rebuild(request)

    async def shutdown(self) -> None:
        """Cancel any in-flight generation and stop event delivery."""
        await self._supersede()
        if self._dispatcher is not None:
            await self._events.join()
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
            self._events = None
        logger.info("orchestrator_shutdown", last_generation=self._last_id)

    # ------------------------------------------------------------------
    # Generation lifecycle
    # ------------------------------------------------------------------

    async def _supersede(self) -> None:
        generation, task = self._generation, self._build_task
        if generation is None or task is None or task.done():
            return
        logger.info("generation_superseded", generation=generation.id)
        generation.cancel()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run_generation(self, generation: BuildGeneration) -> None:
        log = logger.bind(generation=generation.id)
        try:
            html = await self._read_template()
            directives = self.parser.parse(html)
            configs = self.executor.prepare(directives)
            log.debug("directives_resolved", count=len(configs))

            artifacts = await self.executor.run(configs, generation)
            generation.token.raise_if_cancelled()
            self._transition(BuildState.SUCCEEDED, generation.id)

            bundle = await self.assembler.assemble(html, directives, artifacts, generation)
            # No await between this check and the publish: a superseded
            # generation can never overwrite a newer bundle.
            generation.token.raise_if_cancelled()
            self.assembler.publish(bundle)
            generation.staging = None

            self.report = BuildReport(
                success=True,
                generation=generation.id,
                state=BuildState.SUCCEEDED,
                published=bundle.files,
            )
            self._emit(BuildEvent(kind="published", generation=generation.id))
            log.info("generation_published", files=len(bundle.files))

        except (GenerationCancelled, asyncio.CancelledError) as exc:
            log.info("generation_cancelled")
            if isinstance(exc, asyncio.CancelledError):
                raise

        except TrowelError as exc:
            self._fail(generation, str(exc), exc.diagnostics())

        except Exception as exc:
            log.error("generation_crashed", exc_info=True)
            self._fail(
                generation,
                f"internal error: {exc}",
                [Diagnostic(source="trowel", message=str(exc))],
            )

        finally:
            self.assembler.discard(generation)
            if not generation.cancelled and self._generation is generation:
                self._transition(BuildState.IDLE, generation.id)

    def _fail(self, generation: BuildGeneration, error: str, diagnostics: list[Diagnostic]) -> None:
        self._transition(BuildState.FAILED, generation.id, error)
        self.report = BuildReport(
            success=False,
            generation=generation.id,
            state=BuildState.FAILED,
            diagnostics=diagnostics,
        )
        logger.error(
            "generation_failed",
            generation=generation.id,
            error=error,
            diagnostics=[str(d) for d in diagnostics],
        )
        self._emit(
            BuildEvent(kind="failed", generation=generation.id, error=error, diagnostics=diagnostics)
        )

    async def _read_template(self) -> str:
        try:
            async with aiofiles.open(self.context.template, mode="r", encoding="utf-8", newline="") as fh:
                return await fh.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise ParseError(f"cannot read {self.context.template}: {exc}") from exc

    def _transition(self, state: BuildState, generation: int, error: str | None = None) -> None:
        self.status = BuildStatus(state=state, generation=generation, error=error)
        self.history.append(self.status)
        logger.debug("state_transition", state=state.value, generation=generation)

    # ------------------------------------------------------------------
    # Event delivery
    # ------------------------------------------------------------------

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None:
            self._events = asyncio.Queue()
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="build-events")

    def _emit(self, event: BuildEvent) -> None:
        if self._events is not None:
            self._events.put_nowait(event)

    async def _dispatch_loop(self) -> None:
        """Deliver events to listeners in order, outside any generation task."""
        while True:
            event = await self._events.get()
            try:
                for listener in self._listeners:
                    try:
                        await listener(event)
                    except Exception:
                        logger.exception("listener_error", kind=event.kind, generation=event.generation)
            finally:
                self._events.task_done()
