"""Asset pipelines -- one per directive kind.

Public API::

    from trowel.pipelines import AssetPipeline, PipelineRegistry, ToolProcess
"""

from trowel.pipelines.base import AssetPipeline
from trowel.pipelines.registry import PipelineRegistry
from trowel.pipelines.tools import ToolOutput, ToolProcess

__all__ = [
    "AssetPipeline",
    "PipelineRegistry",
    "ToolOutput",
    "ToolProcess",
]
