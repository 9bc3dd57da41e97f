"""Tests for the asset pipeline variants and the subprocess handle."""
import asyncio
import sys

import pytest

from trowel.core.context import ToolPaths
from trowel.core.generation import CancellationToken
from trowel.core.models import PipelineKind
from trowel.parsers import parse
from trowel.pipelines import PipelineRegistry, ToolProcess
from trowel.pipelines.assets import InlinePipeline
from trowel.utils.exceptions import (
    BindgenError,
    BuildError,
    CompileError,
    GenerationCancelled,
    ValidationError,
)
from trowel.utils.file_utils import content_hash, tree_hash

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake tools are shell scripts")


def _directive(markup):
    return parse(f"<html><head>{markup}</head><body></body></html>")[0]


async def _execute(context, markup, registry=None):
    directive = _directive(markup)
    pipeline = (registry or PipelineRegistry()).get(directive.kind)
    config = pipeline.configure(directive, context)
    pipeline.validate(config)
    return await pipeline.execute(config, context, CancellationToken(1))


class TestRegistry:
    def test_every_kind_has_a_pipeline(self):
        registry = PipelineRegistry()
        assert len(registry) == len(PipelineKind)
        for kind in PipelineKind:
            assert kind in registry
            assert registry.get(kind).kind is kind

    def test_override(self):
        custom = InlinePipeline()
        registry = PipelineRegistry({PipelineKind.INLINE: custom})
        assert registry.get(PipelineKind.INLINE) is custom


class TestCssPipeline:
    @pytest.mark.asyncio
    async def test_ten_byte_stylesheet(self, context, project):
        [artifact] = await _execute(context, '<link data-trowel rel="css" href="style.css">')
        digest = content_hash((project / "style.css").read_bytes())
        assert artifact.filename == f"style-{digest}.css"
        assert artifact.content == b"a{color:0}"
        assert artifact.media_type == "text/css"
        assert artifact.directive == 0

    @pytest.mark.asyncio
    async def test_identical_bytes_share_hash_not_name(self, context, project):
        (project / "a.css").write_text("p{}")
        (project / "b.css").write_text("p{}")
        [a] = await _execute(context, '<link data-trowel rel="css" href="a.css">')
        [b] = await _execute(context, '<link data-trowel rel="css" href="b.css">')
        assert a.content_hash == b.content_hash
        assert a.filename != b.filename
        assert a.filename.startswith("a-") and b.filename.startswith("b-")

    @pytest.mark.asyncio
    async def test_repeat_runs_are_identical(self, context):
        first = await _execute(context, '<link data-trowel rel="css" href="style.css">')
        second = await _execute(context, '<link data-trowel rel="css" href="style.css">')
        assert first[0].filename == second[0].filename

    @pytest.mark.asyncio
    async def test_inline_body(self, context):
        [artifact] = await _execute(context, '<style data-trowel rel="css">body{}</style>')
        digest = content_hash(b"body{}")
        assert artifact.filename == f"style-{digest}.css"

    def test_missing_source_fails_validation(self, context):
        directive = _directive('<link data-trowel rel="css" href="nope.css">')
        pipeline = PipelineRegistry().get(directive.kind)
        with pytest.raises(ValidationError, match="does not exist"):
            pipeline.validate(pipeline.configure(directive, context))


class TestSimplePipelines:
    @pytest.mark.asyncio
    async def test_icon(self, context, project):
        (project / "favicon.png").write_bytes(b"\x89PNG")
        [artifact] = await _execute(context, '<link data-trowel rel="icon" href="favicon.png">')
        digest = content_hash(b"\x89PNG")
        assert artifact.filename == f"favicon-{digest}.png"
        assert artifact.media_type == "image/png"

    @pytest.mark.asyncio
    async def test_inline_file(self, context, project):
        (project / "boot.js").write_text("start();")
        [artifact] = await _execute(context, '<link data-trowel rel="inline" href="boot.js">')
        assert artifact.inline
        assert artifact.media_type == "text/javascript"
        assert artifact.content == b"start();"

    def test_inline_type_detection(self):
        assert InlinePipeline.content_type(_directive('<link data-trowel rel="inline" href="a.css">')) == "css"
        assert InlinePipeline.content_type(_directive('<link data-trowel rel="inline" href="a.mjs">')) == "module"
        assert InlinePipeline.content_type(_directive('<style data-trowel rel="inline">a{}</style>')) == "css"
        assert InlinePipeline.content_type(
            _directive('<link data-trowel rel="inline" href="a.txt" type="svg">')
        ) == "svg"

    def test_inline_rejects_unknown_type(self, context, project):
        (project / "notes.txt").write_text("hi")
        directive = _directive('<link data-trowel rel="inline" href="notes.txt">')
        pipeline = PipelineRegistry().get(directive.kind)
        with pytest.raises(ValidationError, match="cannot inline"):
            pipeline.validate(pipeline.configure(directive, context))

    @pytest.mark.asyncio
    async def test_copy_file_keeps_name_under_target_path(self, context, project):
        (project / "robots.txt").write_text("User-agent: *")
        [artifact] = await _execute(
            context, '<link data-trowel rel="copy-file" href="robots.txt" data-target-path="/static/">'
        )
        assert artifact.filename == "static/robots.txt"
        assert artifact.path == project / "robots.txt"
        assert artifact.content is None
        assert artifact.content_hash == content_hash(b"User-agent: *")

    @pytest.mark.asyncio
    async def test_copy_dir(self, context, project):
        (project / "assets" / "img").mkdir(parents=True)
        (project / "assets" / "img" / "logo.svg").write_text("<svg/>")
        [artifact] = await _execute(context, '<link data-trowel rel="copy-dir" href="assets">')
        assert artifact.filename == "assets"
        assert artifact.content_hash == tree_hash(project / "assets")

    def test_copy_dir_requires_directory(self, context):
        directive = _directive('<link data-trowel rel="copy-dir" href="missing">')
        pipeline = PipelineRegistry().get(directive.kind)
        with pytest.raises(ValidationError, match="directory does not exist"):
            pipeline.validate(pipeline.configure(directive, context))

    @pytest.mark.parametrize("target", ["../outside", "static/../../x", "C:/temp"])
    def test_target_path_must_stay_in_bundle(self, context, project, target):
        (project / "robots.txt").write_text("User-agent: *")
        directive = _directive(
            f'<link data-trowel rel="copy-file" href="robots.txt" data-target-path="{target}">'
        )
        pipeline = PipelineRegistry().get(directive.kind)
        with pytest.raises(ValidationError, match="inside the bundle"):
            pipeline.validate(pipeline.configure(directive, context))

    def test_copy_dir_cannot_replace_bundle_root(self, context, project):
        (project / "assets").mkdir()
        directive = _directive('<link data-trowel rel="copy-dir" href="assets" data-target-path="/">')
        pipeline = PipelineRegistry().get(directive.kind)
        with pytest.raises(ValidationError, match="bundle root"):
            pipeline.validate(pipeline.configure(directive, context))


@posix_only
class TestSassPipeline:
    @pytest.mark.asyncio
    async def test_compiles_file(self, make_context, project, fake_sass):
        (project / "main.scss").write_text("$c: red; a { color: $c; }")
        context = make_context(tools=ToolPaths(sass=fake_sass))
        [artifact] = await _execute(context, '<link data-trowel rel="scss" href="main.scss">')
        assert artifact.content == b"$c: red; a { color: $c; }"
        assert artifact.filename == f"main-{content_hash(artifact.content)}.css"
        assert artifact.kind is PipelineKind.SASS

    @pytest.mark.asyncio
    async def test_compiles_inline_body_over_stdin(self, make_context, fake_sass):
        context = make_context(tools=ToolPaths(sass=fake_sass))
        [artifact] = await _execute(context, '<style data-trowel rel="scss">a{b:c}</style>')
        assert artifact.content == b"a{b:c}"
        assert artifact.filename.startswith("style-")

    @pytest.mark.asyncio
    async def test_compile_error_carries_position(self, make_context, project, fake_tool):
        (project / "main.scss").write_text("a {")
        sass = fake_tool(
            "sass",
            "echo 'Error: expected \"}\".' >&2\n"
            "echo '  main.scss 3:4  root stylesheet' >&2\n"
            "exit 65\n",
        )
        context = make_context(tools=ToolPaths(sass=sass))
        with pytest.raises(CompileError) as excinfo:
            await _execute(context, '<link data-trowel rel="scss" href="main.scss">')
        error = excinfo.value
        assert 'expected "}"' in error.detail
        positioned = error.diagnostics()[1]
        assert (positioned.source, positioned.line, positioned.column) == ("main.scss", 3, 4)

    @pytest.mark.asyncio
    async def test_missing_compiler(self, make_context, project, tmp_path):
        (project / "main.scss").write_text("a{}")
        context = make_context(tools=ToolPaths(sass=str(tmp_path / "no-such-sass")))
        with pytest.raises(CompileError, match="failed to run"):
            await _execute(context, '<link data-trowel rel="scss" href="main.scss">')


@posix_only
class TestRustAppPipeline:
    @pytest.mark.asyncio
    async def test_builds_and_binds(self, make_context, project, rust_project):
        context = make_context(tools=rust_project)
        artifacts = await _execute(context, '<link data-trowel rel="rust">')
        js, wasm = artifacts
        assert wasm.content == b"\0asm\x01\0\0\0"
        digest = content_hash(wasm.content, js.content)
        assert js.filename == f"demo_app-{digest}.js"
        assert wasm.filename == f"demo_app_bg-{digest}.wasm"
        assert wasm.media_type == "application/wasm"

    @pytest.mark.asyncio
    async def test_compiler_diagnostics_forwarded(self, make_context, project, rust_project, fake_tool):
        cargo = fake_tool(
            "cargo-broken",
            "echo 'error[E0425]: cannot find value `x` in this scope' >&2\n"
            "echo '  --> src/lib.rs:3:5' >&2\n"
            "exit 101\n",
        )
        context = make_context(tools=rust_project.model_copy(update={"cargo": cargo}))
        with pytest.raises(BuildError) as excinfo:
            await _execute(context, '<link data-trowel rel="rust">')
        assert "cannot find value" in excinfo.value.detail
        positioned = excinfo.value.diagnostics()[1]
        assert (positioned.source, positioned.line, positioned.column) == ("src/lib.rs", 3, 5)

    @pytest.mark.asyncio
    async def test_bindgen_failure(self, make_context, project, rust_project, fake_tool):
        bindgen = fake_tool("wasm-bindgen-broken", "echo 'error: not a wasm module' >&2\nexit 1\n")
        context = make_context(tools=rust_project.model_copy(update={"wasm_bindgen": bindgen}))
        with pytest.raises(BindgenError, match="not a wasm module"):
            await _execute(context, '<link data-trowel rel="rust">')

    @pytest.mark.asyncio
    async def test_bindgen_without_output(self, make_context, project, rust_project, fake_tool):
        bindgen = fake_tool("wasm-bindgen-silent", "exit 0\n")
        context = make_context(tools=rust_project.model_copy(update={"wasm_bindgen": bindgen}))
        with pytest.raises(BindgenError, match="missing wasm-bindgen output"):
            await _execute(context, '<link data-trowel rel="rust">')

    def test_missing_manifest(self, context):
        directive = _directive('<link data-trowel rel="rust" href="missing/Cargo.toml">')
        with pytest.raises(ValidationError, match="manifest not found"):
            PipelineRegistry().get(directive.kind).configure(directive, context)


@posix_only
class TestToolProcess:
    @pytest.mark.asyncio
    async def test_stdin_and_stdout(self, fake_tool):
        cat = fake_tool("echo-stdin", "cat\n")
        output = await ToolProcess(cat, [], stdin=b"hello").run(CancellationToken(1))
        assert output.ok
        assert output.stdout == b"hello"

    @pytest.mark.asyncio
    async def test_cancelled_token_never_spawns(self, fake_tool):
        token = CancellationToken(3)
        token.cancel()
        process = ToolProcess(fake_tool("noop", "exit 0\n"), [])
        with pytest.raises(GenerationCancelled):
            await process.run(token)
        assert not process.running

    @pytest.mark.asyncio
    async def test_token_terminates_running_process(self, fake_tool):
        slow = fake_tool("slow", "exec sleep 30\n")
        token = CancellationToken(1)
        process = ToolProcess(slow, [])
        task = asyncio.create_task(process.run(token))
        await asyncio.sleep(0.3)
        assert process.running

        token.cancel()
        with pytest.raises(GenerationCancelled):
            await asyncio.wait_for(task, 5)
        assert not process.running

    @pytest.mark.asyncio
    async def test_task_cancellation_terminates_process(self, fake_tool):
        slow = fake_tool("slow", "exec sleep 30\n")
        process = ToolProcess(slow, [])
        task = asyncio.create_task(process.run(CancellationToken(1)))
        await asyncio.sleep(0.3)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert not process.running
