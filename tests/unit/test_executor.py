"""Tests for concurrent pipeline execution."""
import asyncio

import pytest

from trowel.core.generation import BuildGeneration
from trowel.core.models import PipelineKind
from trowel.engine import PipelineExecutor
from trowel.parsers import parse
from trowel.pipelines import PipelineRegistry
from trowel.pipelines.assets import CopyFilePipeline, IconPipeline
from trowel.pipelines.stylesheet import CssPipeline
from trowel.utils.exceptions import (
    CompileError,
    GenerationCancelled,
    IoError,
    PipelineError,
    ValidationError,
)


class SlowCss(CssPipeline):
    """Sleeps before hashing; records cancellations and peak concurrency."""

    def __init__(self, delay=0.5):
        self.delay = delay
        self.cancelled = 0
        self.active = 0
        self.peak = 0

    async def execute(self, config, context, token):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1
        return await super().execute(config, context, token)


class FailingIcon(IconPipeline):
    def __init__(self, delay=0.0, error=None):
        self.delay = delay
        self.error = error
        self.cancelled = 0

    async def execute(self, config, context, token):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        raise self.error or CompileError(config.label, "broken icon")


class FailingCopy(CopyFilePipeline):
    def __init__(self, delay, error):
        self.delay = delay
        self.error = error
        self.cancelled = 0

    async def execute(self, config, context, token):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        raise self.error


@pytest.fixture
def assets(project):
    (project / "favicon.png").write_bytes(b"png")
    (project / "robots.txt").write_text("ok")
    for name in "abcde":
        (project / f"{name}.css").write_text(f".{name}{{}}")
    return project


def _links(*pairs):
    links = "".join(f'<link data-trowel rel="{rel}" href="{href}">' for rel, href in pairs)
    return parse(f"<html><head>{links}</head><body></body></html>")


class TestPipelineExecutor:
    @pytest.mark.asyncio
    async def test_collects_artifacts_by_directive(self, context, assets):
        executor = PipelineExecutor(context)
        configs = executor.prepare(_links(("css", "a.css"), ("icon", "favicon.png"), ("css", "b.css")))
        generation = BuildGeneration(1)

        results = await executor.run(configs, generation)

        assert sorted(results) == [0, 1, 2]
        assert results[0][0].filename.startswith("a-")
        assert results[1][0].kind is PipelineKind.ICON
        assert generation.artifacts == results
        assert not generation.tasks

    @pytest.mark.asyncio
    async def test_empty_generation(self, context):
        assert await PipelineExecutor(context).run([], BuildGeneration(1)) == {}

    @pytest.mark.asyncio
    async def test_worker_capacity_bounds_concurrency(self, context, assets):
        slow = SlowCss(delay=0.05)
        executor = PipelineExecutor(
            context, PipelineRegistry({PipelineKind.CSS: slow}), workers=2
        )
        configs = executor.prepare(_links(*[("css", f"{n}.css") for n in "abcde"]))

        results = await executor.run(configs, BuildGeneration(1))

        assert len(results) == 5
        assert slow.peak == 2

    def test_prepare_rejects_before_running(self, context, assets):
        executor = PipelineExecutor(context)
        with pytest.raises(ValidationError, match="missing.css"):
            executor.prepare(_links(("css", "a.css"), ("css", "missing.css")))


class TestFailFast:
    @pytest.mark.asyncio
    async def test_failure_cancels_slow_sibling(self, context, assets):
        slow = SlowCss(delay=30)
        executor = PipelineExecutor(
            context,
            PipelineRegistry({PipelineKind.CSS: slow, PipelineKind.ICON: FailingIcon()}),
        )
        configs = executor.prepare(_links(("css", "a.css"), ("icon", "favicon.png")))

        with pytest.raises(CompileError, match="broken icon"):
            await asyncio.wait_for(executor.run(configs, BuildGeneration(1)), 5)
        assert slow.cancelled == 1

    @pytest.mark.asyncio
    async def test_first_failure_wins(self, context, assets):
        icon = FailingIcon(delay=0.01, error=CompileError("favicon.png", "first"))
        copy = FailingCopy(delay=2, error=CompileError("robots.txt", "second"))
        executor = PipelineExecutor(
            context,
            PipelineRegistry({PipelineKind.ICON: icon, PipelineKind.COPY_FILE: copy}),
        )
        configs = executor.prepare(_links(("copy-file", "robots.txt"), ("icon", "favicon.png")))

        with pytest.raises(CompileError, match="first"):
            await executor.run(configs, BuildGeneration(1))
        assert copy.cancelled == 1

    @pytest.mark.asyncio
    async def test_os_error_becomes_io_error(self, context, assets):
        icon = FailingIcon(error=PermissionError("denied"))
        executor = PipelineExecutor(context, PipelineRegistry({PipelineKind.ICON: icon}))
        configs = executor.prepare(_links(("icon", "favicon.png")))

        with pytest.raises(IoError, match="denied"):
            await executor.run(configs, BuildGeneration(1))

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_pipeline_error(self, context, assets):
        icon = FailingIcon(error=KeyError("oops"))
        executor = PipelineExecutor(context, PipelineRegistry({PipelineKind.ICON: icon}))
        configs = executor.prepare(_links(("icon", "favicon.png")))

        with pytest.raises(PipelineError, match="unexpected error"):
            await executor.run(configs, BuildGeneration(1))


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_generation(self, context, assets):
        slow = SlowCss(delay=30)
        executor = PipelineExecutor(context, PipelineRegistry({PipelineKind.CSS: slow}))
        configs = executor.prepare(_links(("css", "a.css"), ("css", "b.css")))
        generation = BuildGeneration(4)

        run = asyncio.create_task(executor.run(configs, generation))
        await asyncio.sleep(0.05)
        generation.cancel()

        with pytest.raises(GenerationCancelled):
            await asyncio.wait_for(run, 5)
        assert slow.cancelled == 2
        assert generation.artifacts == {}
