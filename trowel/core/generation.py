"""Build generations and their cancellation signal."""

from __future__ import annotations

import asyncio
from pathlib import Path

from trowel.core.models import OutputArtifact
from trowel.utils.exceptions import GenerationCancelled


class CancellationToken:
    """Cooperative cancellation flag shared by every task of a generation.

    Pipelines call :meth:`raise_if_cancelled` before spawning a subprocess
    and after each I/O step.
    """

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.generation)

    async def wait(self) -> None:
        await self._event.wait()


class BuildGeneration:
    """One end-to-end build attempt.

    Owns the pipeline tasks spawned on its behalf, the artifacts they
    produced and its staging directory.  Nothing here is shared with any
    other generation.
    """

    def __init__(self, id: int) -> None:
        self.id = id
        self.token = CancellationToken(id)
        self.tasks: set[asyncio.Task] = set()
        self.artifacts: dict[int, list[OutputArtifact]] = {}
        self.staging: Path | None = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def track(self, task: asyncio.Task) -> asyncio.Task:
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def cancel(self) -> None:
        """Signal cancellation and cancel every still-running task."""
        self.token.cancel()
        for task in list(self.tasks):
            task.cancel()

    def __repr__(self) -> str:
        return f"BuildGeneration(id={self.id}, cancelled={self.cancelled})"
