"""Pipeline executor -- runs every directive's pipeline for one generation.

The :class:`PipelineExecutor` is the bridge between parsed directives and
the pipeline registry.  For a generation it:

1. Resolves and validates every directive (:meth:`prepare`) before any
   pipeline work starts.
2. Launches one task per directive, at most ``workers`` executing at once.
3. Fails fast: the first pipeline error cancels all unfinished siblings
   and is the error surfaced; later failures are discarded.
4. Returns the artifacts keyed by directive index.
"""

from __future__ import annotations

import asyncio
import time

from trowel.core.context import BuildContext
from trowel.core.generation import BuildGeneration
from trowel.core.models import AssetDirective, OutputArtifact, PipelineConfig
from trowel.pipelines.registry import PipelineRegistry
from trowel.utils.exceptions import GenerationCancelled, IoError, PipelineError
from trowel.utils.logging import get_logger


class PipelineExecutor:
    """Execute asset pipelines concurrently with bounded capacity.

    Parameters
    ----------
    context:
        The project's :class:`BuildContext`.
    registry:
        Kind-to-pipeline lookup; the full default set when not provided.
    workers:
        Maximum number of pipelines executing at once.  Defaults to
        ``context.workers``.
    """

    def __init__(
        self,
        context: BuildContext,
        registry: PipelineRegistry | None = None,
        workers: int | None = None,
    ) -> None:
        self.context = context
        self.registry = registry or PipelineRegistry()
        self.workers = workers or context.workers
        self._slots = asyncio.Semaphore(self.workers)
        self.logger = get_logger("engine.executor")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def prepare(self, directives: list[AssetDirective]) -> list[PipelineConfig]:
        """Resolve and validate every directive.

        Raises :class:`ValidationError` on the first invalid directive; no
        pipeline has been started at that point.
        """
        configs: list[PipelineConfig] = []
        for directive in directives:
            pipeline = self.registry.get(directive.kind)
            config = pipeline.configure(directive, self.context)
            pipeline.validate(config)
            configs.append(config)
        return configs

    async def run(
        self,
        configs: list[PipelineConfig],
        generation: BuildGeneration,
    ) -> dict[int, list[OutputArtifact]]:
        """Execute all *configs* for *generation*.

        Returns
        -------
        dict
            Directive index -> artifacts produced by that directive.

        Raises
        ------
        PipelineError
            The first pipeline failure of the generation.
        GenerationCancelled
            When the generation was superseded while running.
        """
        self.logger.info("executor_start", generation=generation.id, pipelines=len(configs))
        start = time.monotonic()
        if not configs:
            return {}

        failures: list[PipelineError] = []
        tasks = {
            generation.track(
                asyncio.create_task(
                    self._run_one(config, generation, failures),
                    name=f"gen{generation.id}-{config.kind.value}-{config.directive.index}",
                )
            ): config
            for config in configs
        }

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await self._cancel_all(tasks)
            raise

        if pending:
            # Either a failure or a cancellation ended the wait early.
            await self._cancel_all(pending)
        for task in done:
            if not task.cancelled():
                task.exception()  # mark retrieved; siblings' errors are discarded

        if generation.cancelled:
            raise GenerationCancelled(generation.id)
        if failures:
            error = failures[0]
            self.logger.error(
                "executor_failed",
                generation=generation.id,
                error=str(error),
                discarded=len(failures) - 1,
            )
            raise error
        for task in done:
            if task.cancelled():
                raise GenerationCancelled(generation.id)
            exc = task.exception()
            if isinstance(exc, GenerationCancelled):
                raise exc

        results = {tasks[task].directive.index: task.result() for task in done}
        generation.artifacts = results
        self.logger.info(
            "executor_complete",
            generation=generation.id,
            artifacts=sum(len(a) for a in results.values()),
            duration=round(time.monotonic() - start, 4),
        )
        return results

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_one(
        self,
        config: PipelineConfig,
        generation: BuildGeneration,
        failures: list[PipelineError],
    ) -> list[OutputArtifact]:
        """Run one pipeline inside a worker slot.

        Failures are appended to *failures* in completion order before
        being re-raised, which is how the executor knows which one came
        first.
        """
        pipeline = self.registry.get(config.kind)
        async with self._slots:
            generation.token.raise_if_cancelled()
            self.logger.debug(
                "pipeline_start",
                generation=generation.id,
                kind=config.kind.value,
                source=config.label,
            )
            try:
                artifacts = await pipeline.execute(config, self.context, generation.token)
            except (GenerationCancelled, asyncio.CancelledError):
                raise
            except PipelineError as exc:
                failures.append(exc)
                raise
            except OSError as exc:
                error = IoError(config.label, str(exc))
                failures.append(error)
                raise error from exc
            except Exception as exc:
                # Keep unexpected bugs inside the error taxonomy so they fail
                # the generation instead of the orchestrator.
                self.logger.error(
                    "pipeline_unexpected_error",
                    generation=generation.id,
                    source=config.label,
                    exc_info=True,
                )
                error = PipelineError(config.label, f"unexpected error: {exc}")
                failures.append(error)
                raise error from exc

        self.logger.debug(
            "pipeline_complete",
            generation=generation.id,
            kind=config.kind.value,
            files=[a.filename for a in artifacts],
        )
        return artifacts

    async def _cancel_all(self, tasks) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
