"""Closed registry mapping every :class:`PipelineKind` to its pipeline."""

from __future__ import annotations

from trowel.core.models import PipelineKind
from trowel.pipelines.application import RustAppPipeline
from trowel.pipelines.assets import CopyDirPipeline, CopyFilePipeline, IconPipeline, InlinePipeline
from trowel.pipelines.base import AssetPipeline
from trowel.pipelines.stylesheet import CssPipeline, SassPipeline
from trowel.utils.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_PIPELINES: tuple[type[AssetPipeline], ...] = (
    RustAppPipeline,
    SassPipeline,
    CssPipeline,
    IconPipeline,
    InlinePipeline,
    CopyFilePipeline,
    CopyDirPipeline,
)


class PipelineRegistry:
    """Lookup table from directive kind to pipeline instance.

    The kind set is fixed: every :class:`PipelineKind` member has exactly
    one pipeline, and nothing outside the enum can be registered.
    Overrides replace the pipeline for an existing kind::

        registry = PipelineRegistry({PipelineKind.CSS: MyCssPipeline()})
    """

    def __init__(self, overrides: dict[PipelineKind, AssetPipeline] | None = None) -> None:
        self._pipelines: dict[PipelineKind, AssetPipeline] = {
            cls.kind: cls() for cls in _DEFAULT_PIPELINES
        }
        for kind, pipeline in (overrides or {}).items():
            self.register(kind, pipeline)

        missing = set(PipelineKind) - set(self._pipelines)
        if missing:
            raise RuntimeError(f"No pipeline registered for: {sorted(k.value for k in missing)}")

    def register(self, kind: PipelineKind, pipeline: AssetPipeline) -> None:
        kind = PipelineKind(kind)
        if kind in self._pipelines:
            logger.debug(
                "pipeline_overridden",
                kind=kind.value,
                pipeline=type(pipeline).__name__,
            )
        self._pipelines[kind] = pipeline

    def get(self, kind: PipelineKind) -> AssetPipeline:
        return self._pipelines[kind]

    def __len__(self) -> int:
        return len(self._pipelines)

    def __contains__(self, kind: PipelineKind) -> bool:
        return kind in self._pipelines
