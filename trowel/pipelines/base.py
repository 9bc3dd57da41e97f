"""Abstract base class for all asset pipelines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import ClassVar

import aiofiles  # type: ignore[import-untyped]

from trowel.core.context import BuildContext
from trowel.core.generation import CancellationToken
from trowel.core.models import AssetDirective, OutputArtifact, PipelineConfig, PipelineKind
from trowel.utils.exceptions import IoError, ValidationError


class AssetPipeline(ABC):
    """Base class every pipeline variant inherits from.

    A pipeline turns one :class:`PipelineConfig` into one or more
    content-addressed :class:`OutputArtifact` records.  ``configure`` and
    ``validate`` run for every directive before any pipeline executes, so
    a bad template never starts half a build.
    """

    kind: ClassVar[PipelineKind]

    def configure(self, directive: AssetDirective, context: BuildContext) -> PipelineConfig:
        """Resolve *directive* against the template directory."""
        source = None
        if directive.href:
            source = (context.template_dir / directive.href).resolve()
        options = {
            name.removeprefix("data-"): value
            for name, value in directive.attrs.items()
            if name.startswith("data-")
        }
        return PipelineConfig(
            directive=directive,
            source=source,
            content=directive.content,
            release=context.release,
            public_url=context.public_url,
            target_path=options.pop("target-path", None),
            options=options,
        )

    @abstractmethod
    def validate(self, config: PipelineConfig) -> None:
        """Raise :class:`ValidationError` when *config* cannot be built."""
        ...

    @abstractmethod
    async def execute(
        self,
        config: PipelineConfig,
        context: BuildContext,
        token: CancellationToken,
    ) -> list[OutputArtifact]:
        """Run the pipeline and return its artifacts.

        Implementations check *token* before spawning a subprocess and
        after each I/O step.
        """
        ...

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def require_file(config: PipelineConfig) -> None:
        if config.source is None:
            return
        if not config.source.is_file():
            raise ValidationError(
                config.directive.label,
                f"source file does not exist: {config.source}",
                config.directive.line,
            )

    @staticmethod
    def require_bundle_target(config: PipelineConfig) -> None:
        """Reject a ``data-target-path`` that would leave the bundle.

        A leading slash means the bundle root, so ``/static/`` and
        ``static`` are the same place.
        """
        raw = config.target_path
        if not raw:
            return
        relative = PurePosixPath(raw.replace("\\", "/").strip("/"))
        if ".." in relative.parts or PureWindowsPath(raw).drive:
            raise ValidationError(
                config.directive.label,
                f"data-target-path must stay inside the bundle: {raw!r}",
                config.directive.line,
            )

    @staticmethod
    async def read_source(config: PipelineConfig, token: CancellationToken) -> bytes:
        """Return the directive's bytes, from its file or its inline body."""
        token.raise_if_cancelled()
        if config.source is None:
            data = (config.content or "").encode("utf-8")
        else:
            try:
                async with aiofiles.open(config.source, mode="rb") as fh:
                    data = await fh.read()
            except OSError as exc:
                raise IoError(str(config.source), str(exc)) from exc
        token.raise_if_cancelled()
        return data

    @staticmethod
    def base_name(config: PipelineConfig, default: str) -> str:
        return config.source.stem if config.source is not None else default

    @staticmethod
    def target_name(config: PipelineConfig, name: str) -> str:
        """Place *name* under the directive's ``data-target-path``, if any."""
        if not config.target_path:
            return name
        return (Path(config.target_path.strip("/")) / name).as_posix()
