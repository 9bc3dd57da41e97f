"""FastAPI dependency functions for injection into endpoint handlers.

Long-lived services (the reload hub, the orchestrator) are created by
the serve runner and stored on ``app.state``; these functions just look
them up.
"""

from __future__ import annotations

from fastapi import Request

from trowel.api.livereload import ReloadHub
from trowel.engine.orchestrator import BuildOrchestrator


def get_reload_hub(request: Request) -> ReloadHub:
    return request.app.state.reload_hub


def get_orchestrator(request: Request) -> BuildOrchestrator | None:
    """The orchestrator, or ``None`` when serving a bundle without building."""
    return getattr(request.app.state, "orchestrator", None)
