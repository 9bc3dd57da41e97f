"""Stylesheet pipelines: Sass/SCSS compiled by dart-sass, plain CSS hashed as-is."""

from __future__ import annotations

from trowel.core.context import BuildContext
from trowel.core.generation import CancellationToken
from trowel.core.models import OutputArtifact, PipelineConfig, PipelineKind
from trowel.pipelines.base import AssetPipeline
from trowel.pipelines.tools import ToolProcess, parse_sass_diagnostics
from trowel.utils.exceptions import CompileError
from trowel.utils.file_utils import content_hash, hashed_filename
from trowel.utils.logging import get_logger

logger = get_logger("pipelines.stylesheet")

INLINE_BASE_NAME = "style"


def _stylesheet_artifact(config: PipelineConfig, css: bytes, kind: PipelineKind) -> OutputArtifact:
    digest = content_hash(css)
    base = AssetPipeline.base_name(config, INLINE_BASE_NAME)
    return OutputArtifact(
        filename=hashed_filename(base, digest, "css"),
        directive=config.directive.index,
        kind=kind,
        media_type="text/css",
        content_hash=digest,
        content=css,
    )


class SassPipeline(AssetPipeline):
    kind = PipelineKind.SASS

    def validate(self, config: PipelineConfig) -> None:
        self.require_file(config)

    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        args = ["--no-source-map", f"--style={'compressed' if config.release else 'expanded'}"]
        stdin = None
        if config.source is None:
            args.append("--stdin")
            if config.directive.attrs.get("lang") == "sass":
                args.append("--indented")
            stdin = (config.content or "").encode("utf-8")
        else:
            args.append(str(config.source))

        sass = ToolProcess(context.tools.sass, args, cwd=context.template_dir, stdin=stdin)
        try:
            result = await sass.run(token)
        except OSError as exc:
            raise CompileError(config.label, f"failed to run {sass.program}: {exc}") from exc
        if not result.ok:
            raise CompileError(
                config.label,
                result.stderr.strip() or f"sass exited with status {result.returncode}",
                parse_sass_diagnostics(result.stderr, config.label),
            )

        artifact = _stylesheet_artifact(config, result.stdout, self.kind)
        logger.debug("sass_compiled", source=config.label, filename=artifact.filename)
        return [artifact]


class CssPipeline(AssetPipeline):
    kind = PipelineKind.CSS

    def validate(self, config: PipelineConfig) -> None:
        self.require_file(config)

    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        css = await self.read_source(config, token)
        return [_stylesheet_artifact(config, css, self.kind)]
