"""Simple pipelines: icons, inlined content and verbatim copies."""

from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath

from trowel.core.context import BuildContext
from trowel.core.generation import CancellationToken
from trowel.core.models import AssetDirective, OutputArtifact, PipelineConfig, PipelineKind
from trowel.pipelines.base import AssetPipeline
from trowel.utils.exceptions import IoError, ValidationError
from trowel.utils.file_utils import content_hash, hashed_filename, media_type_for, tree_hash

_INLINE_TYPES: dict[str, str] = {
    "css": "text/css",
    "js": "text/javascript",
    "mjs": "text/javascript",
    "module": "text/javascript",
    "html": "text/html",
    "svg": "image/svg+xml",
}

_INLINE_EXTENSIONS: dict[str, str] = {"module": "js", "mjs": "js"}


class IconPipeline(AssetPipeline):
    kind = PipelineKind.ICON

    def validate(self, config: PipelineConfig) -> None:
        self.require_file(config)

    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        data = await self.read_source(config, token)
        digest = content_hash(data)
        filename = hashed_filename(config.source.stem, digest, config.source.suffix or "ico")
        return [
            OutputArtifact(
                filename=filename,
                directive=config.directive.index,
                kind=self.kind,
                media_type=media_type_for(filename),
                content_hash=digest,
                content=data,
            )
        ]


class InlinePipeline(AssetPipeline):
    """Embed a file (or the element's own body) directly into the page."""

    kind = PipelineKind.INLINE

    @staticmethod
    def content_type(directive: AssetDirective) -> str:
        """``css``, ``js``, ``module``, ``html`` or ``svg``.

        An explicit ``type`` attribute wins, then the source extension,
        then the element the directive was written on.
        """
        explicit = directive.attrs.get("type", "").strip().lower()
        if explicit:
            return {"text/css": "css", "text/javascript": "js", "mjs": "module"}.get(explicit, explicit)
        if directive.href:
            suffix = Path(directive.href).suffix.lstrip(".").lower()
            return "module" if suffix == "mjs" else suffix
        return "css" if directive.tag == "style" else "js"

    def validate(self, config: PipelineConfig) -> None:
        self.require_file(config)
        content_type = self.content_type(config.directive)
        if content_type not in _INLINE_TYPES:
            raise ValidationError(
                config.directive.label,
                f"cannot inline content of type {content_type!r}",
                config.directive.line,
            )

    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        data = await self.read_source(config, token)
        content_type = self.content_type(config.directive)
        digest = content_hash(data)
        extension = _INLINE_EXTENSIONS.get(content_type, content_type)
        return [
            OutputArtifact(
                filename=hashed_filename(self.base_name(config, "inline"), digest, extension),
                directive=config.directive.index,
                kind=self.kind,
                media_type=_INLINE_TYPES[content_type],
                content_hash=digest,
                content=data,
                inline=True,
            )
        ]


class CopyFilePipeline(AssetPipeline):
    """Copy one file into the bundle under its own name."""

    kind = PipelineKind.COPY_FILE

    def validate(self, config: PipelineConfig) -> None:
        self.require_file(config)
        self.require_bundle_target(config)

    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        data = await self.read_source(config, token)
        filename = self.target_name(config, config.source.name)
        return [
            OutputArtifact(
                filename=filename,
                directive=config.directive.index,
                kind=self.kind,
                media_type=media_type_for(filename),
                content_hash=content_hash(data),
                path=config.source,
            )
        ]


class CopyDirPipeline(AssetPipeline):
    """Copy a directory tree into the bundle."""

    kind = PipelineKind.COPY_DIR

    def validate(self, config: PipelineConfig) -> None:
        if config.source is None or not config.source.is_dir():
            raise ValidationError(
                config.directive.label,
                f"source directory does not exist: {config.source}",
                config.directive.line,
            )
        self.require_bundle_target(config)
        if config.target_path and PurePosixPath(config.target_path.strip("/")).parts == ():
            raise ValidationError(
                config.directive.label,
                "data-target-path of a copied directory cannot be the bundle root",
                config.directive.line,
            )

    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        token.raise_if_cancelled()
        try:
            digest = await asyncio.to_thread(tree_hash, config.source)
        except OSError as exc:
            raise IoError(str(config.source), str(exc)) from exc
        token.raise_if_cancelled()

        # data-target-path names the destination directory itself.
        filename = config.target_path.strip("/") if config.target_path else config.source.name
        return [
            OutputArtifact(
                filename=filename,
                directive=config.directive.index,
                kind=self.kind,
                media_type="inode/directory",
                content_hash=digest,
                path=config.source,
            )
        ]
