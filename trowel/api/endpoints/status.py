from fastapi import APIRouter, Depends

from trowel.core.models import BuildReport, BuildStatus
from trowel.dependencies import get_orchestrator
from trowel.engine.orchestrator import BuildOrchestrator

router = APIRouter()


@router.get("/status")
async def build_status(
    orchestrator: BuildOrchestrator | None = Depends(get_orchestrator),
) -> dict:
    if orchestrator is None:
        return {"status": BuildStatus().model_dump(), "report": BuildReport().model_dump()}
    return {
        "status": orchestrator.status.model_dump(mode="json"),
        "report": orchestrator.report.model_dump(mode="json"),
    }
