"""Build engine -- pipeline execution, the generation state machine, and watching.

Public API::

    from trowel.engine import (
        BuildOrchestrator,
        Debouncer,
        FileWatcher,
        PipelineExecutor,
    )
"""

from trowel.engine.executor import PipelineExecutor
from trowel.engine.orchestrator import BuildOrchestrator
from trowel.engine.watcher import Debouncer, FileWatcher

__all__ = [
    "BuildOrchestrator",
    "Debouncer",
    "FileWatcher",
    "PipelineExecutor",
]
