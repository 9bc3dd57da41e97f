"""Tests for the generation state machine."""
import asyncio

import pytest

from trowel.core.models import BuildState, PipelineKind, RebuildRequest
from trowel.engine import BuildOrchestrator, PipelineExecutor
from trowel.pipelines import PipelineRegistry
from trowel.pipelines.assets import IconPipeline
from trowel.pipelines.stylesheet import CssPipeline
from trowel.utils.exceptions import CompileError

CSS_AND_ICON = (
    '<link data-trowel rel="css" href="style.css">\n'
    '<link data-trowel rel="icon" href="favicon.png">'
)


class SlowCss(CssPipeline):
    def __init__(self, delay):
        self.delay = delay
        self.cancelled = 0

    async def execute(self, config, context, token):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return await super().execute(config, context, token)


class BrokenIcon(IconPipeline):
    async def execute(self, config, context, token):
        raise CompileError(config.label, "broken icon")


def _css_file(files):
    [name] = [name for name in files if name.endswith(".css")]
    return name


def _orchestrator(context, overrides=None):
    registry = PipelineRegistry(overrides) if overrides else None
    return BuildOrchestrator(context, executor=PipelineExecutor(context, registry))


@pytest.fixture
def events():
    return []


@pytest.fixture
def listener(events):
    async def _record(event):
        events.append(event)

    return _record


class TestBuild:
    @pytest.mark.asyncio
    async def test_success_publishes(self, context, read_dist, listener, events):
        orchestrator = BuildOrchestrator(context)
        orchestrator.add_listener(listener)

        report = await orchestrator.build_once()
        await orchestrator.shutdown()

        assert report.success
        assert report.generation == 1
        files = read_dist()
        assert _css_file(files).startswith("style-")
        assert _css_file(files) in files["index.html"].decode()
        assert [e.kind for e in events] == ["building", "published"]
        assert [s.state for s in orchestrator.history] == [
            BuildState.BUILDING,
            BuildState.SUCCEEDED,
            BuildState.IDLE,
        ]
        assert orchestrator.status.state is BuildState.IDLE

    @pytest.mark.asyncio
    async def test_published_page_keeps_surrounding_markup(self, context, write_template, read_dist):
        body = '<p>a&nbsp;b &copy;</p><br><input disabled><img src="x.png">'
        write_template(head='<link data-trowel rel="css" href="style.css">', body=body)
        orchestrator = BuildOrchestrator(context)

        report = await orchestrator.build_once()
        await orchestrator.shutdown()

        assert report.success
        page = read_dist()["index.html"].decode()
        assert f"<body>\n{body}\n</body>" in page

    @pytest.mark.asyncio
    async def test_changing_one_asset_renames_only_that_asset(
        self, context, project, write_template, read_dist
    ):
        (project / "other.css").write_text("b{}")
        write_template(
            head='<link data-trowel rel="css" href="style.css">'
            '<link data-trowel rel="css" href="other.css">'
        )
        orchestrator = BuildOrchestrator(context)
        await orchestrator.build_once()
        before = set(read_dist())

        (project / "style.css").write_text("a{color:1}")
        await orchestrator.build_once()
        after = read_dist()
        await orchestrator.shutdown()

        old_style = next(n for n in before if n.startswith("style-"))
        new_style = next(n for n in after if n.startswith("style-"))
        assert old_style != new_style
        assert old_style not in after
        assert old_style not in after["index.html"].decode()
        assert new_style in after["index.html"].decode()
        assert {n for n in before if n.startswith("other-")} == {
            n for n in after if n.startswith("other-")
        }

    @pytest.mark.asyncio
    async def test_identical_runs_are_reproducible(self, context, read_dist):
        orchestrator = BuildOrchestrator(context)
        await orchestrator.build_once()
        first = read_dist()
        await orchestrator.build_once()
        await orchestrator.shutdown()
        assert read_dist() == first


class TestFailure:
    @pytest.mark.asyncio
    async def test_failed_generation_leaves_dist_untouched(
        self, context, project, write_template, read_dist, listener, events
    ):
        good = BuildOrchestrator(context)
        await good.build_once()
        await good.shutdown()
        published = read_dist()

        (project / "favicon.png").write_bytes(b"png")
        write_template(head=CSS_AND_ICON)
        slow = SlowCss(delay=30)
        orchestrator = _orchestrator(context, {PipelineKind.CSS: slow, PipelineKind.ICON: BrokenIcon()})
        orchestrator.add_listener(listener)

        report = await asyncio.wait_for(orchestrator.build_once(), 10)
        await orchestrator.shutdown()

        assert not report.success
        assert report.state is BuildState.FAILED
        assert any("broken icon" in d.message for d in report.diagnostics)
        assert slow.cancelled == 1
        assert read_dist() == published
        assert not any(context.staging_root.glob("gen-*"))
        assert [e.kind for e in events] == ["building", "failed"]
        assert [s.state for s in orchestrator.history][-2:] == [BuildState.FAILED, BuildState.IDLE]

    @pytest.mark.asyncio
    async def test_template_error_reported(self, context, write_template, read_dist):
        write_template(head='<link data-trowel rel="css">')
        orchestrator = BuildOrchestrator(context)
        report = await orchestrator.build_once()
        await orchestrator.shutdown()

        assert not report.success
        assert "requires an href" in report.diagnostics[0].message
        assert read_dist() == {}

    @pytest.mark.asyncio
    async def test_next_trigger_starts_fresh(self, context, project, read_dist):
        (project / "style.css").unlink()
        orchestrator = BuildOrchestrator(context)
        assert not (await orchestrator.build_once()).success

        (project / "style.css").write_text("a{}")
        report = await orchestrator.build_once()
        await orchestrator.shutdown()

        assert report.success
        assert report.generation == 2
        assert "index.html" in read_dist()


class TestSupersession:
    @pytest.mark.asyncio
    async def test_only_latest_generation_publishes(self, context, project, read_dist, listener, events):
        slow = SlowCss(delay=0.3)
        orchestrator = _orchestrator(context, {PipelineKind.CSS: slow})
        orchestrator.add_listener(listener)

        first = await orchestrator.request_rebuild()
        await asyncio.sleep(0.05)
        (project / "style.css").write_text("a{color:2}")
        second = await orchestrator.request_rebuild()
        await asyncio.sleep(0.05)
        (project / "style.css").write_text("a{color:3}")
        third = await orchestrator.request_rebuild()
        await orchestrator.wait_idle()
        await orchestrator.shutdown()

        assert first.cancelled and second.cancelled and not third.cancelled
        assert slow.cancelled == 2
        assert [e.generation for e in events if e.kind == "published"] == [3]
        assert not any(e.kind == "failed" for e in events)
        files = read_dist()
        assert files[_css_file(files)] == b"a{color:3}"
        assert not any(
            s.state is BuildState.SUCCEEDED and s.generation < 3 for s in orchestrator.history
        )
        assert not any(context.staging_root.glob("gen-*"))

    @pytest.mark.asyncio
    async def test_generation_ids_increase(self, context):
        orchestrator = BuildOrchestrator(context)
        ids = [(await orchestrator.request_rebuild()).id for _ in range(3)]
        await orchestrator.wait_idle()
        await orchestrator.shutdown()
        assert ids == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight_generation(self, context, read_dist):
        orchestrator = _orchestrator(context, {PipelineKind.CSS: SlowCss(delay=30)})
        generation = await orchestrator.request_rebuild()
        await asyncio.sleep(0.05)

        await asyncio.wait_for(orchestrator.shutdown(), 5)

        assert generation.cancelled
        assert read_dist() == {}


class TestRun:
    @pytest.mark.asyncio
    async def test_one_generation_per_request(self, context, project, listener, events):
        async def requests():
            for name in ("a.css", "b.css"):
                await asyncio.sleep(0.2)
                yield RebuildRequest(paths=frozenset({project / name}))

        orchestrator = BuildOrchestrator(context)
        orchestrator.add_listener(listener)
        await orchestrator.run(requests())
        await orchestrator.wait_idle()
        await orchestrator.shutdown()

        assert orchestrator.report.generation == 3
        assert [e.generation for e in events if e.kind == "published"] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, context, listener, events):
        async def explode(event):
            raise RuntimeError("listener bug")

        orchestrator = BuildOrchestrator(context)
        orchestrator.add_listener(explode)
        orchestrator.add_listener(listener)
        await orchestrator.build_once()
        await orchestrator.shutdown()

        assert [e.kind for e in events] == ["building", "published"]
