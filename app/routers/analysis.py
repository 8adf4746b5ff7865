from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.schemas.analysis import (
    AnalysisDetailResponse,
    BatchRequest,
    BatchResponse,
    CatchUpRequest,
    ProcessAnalysisResponse,
)
from app.services.enrichment_service import EnrichmentOrchestrator, get_orchestrator
from app.services.errors import InvalidStateError, NotFoundError

router = APIRouter(prefix="/analysis", tags=["analysis"])


@router.post("/batch", response_model=BatchResponse)
async def analyze_batch(request: BatchRequest, orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.batch_process(request.session_ids, concurrency=request.concurrency)


@router.post("/catch-up", response_model=BatchResponse)
async def catch_up(
    request: Optional[CatchUpRequest] = None,
    orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator),
):
    """Analyze submitted complaints that have no analysis yet."""
    request = request or CatchUpRequest()
    return await orchestrator.catch_up(limit=request.limit, department=request.department)


@router.post("/{session_id}", response_model=ProcessAnalysisResponse)
async def analyze_session(session_id: str, orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)):
    result = await orchestrator.process_session_async(session_id)
    if not result.ok:
        if result.error_code == NotFoundError.code:
            raise HTTPException(status_code=404, detail=result.error)
        if result.error_code == InvalidStateError.code:
            raise HTTPException(status_code=409, detail=result.error)
        return ProcessAnalysisResponse(success=False, message=result.error, error_code=result.error_code)

    return ProcessAnalysisResponse(
        success=True,
        message="Analysis completed",
        analysis=result.value.to_summary(),
    )


@router.get("/{session_id}", response_model=AnalysisDetailResponse)
def get_analysis(session_id: str, orchestrator: EnrichmentOrchestrator = Depends(get_orchestrator)):
    record = orchestrator.get_analysis(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No analysis for session {session_id}")
    return AnalysisDetailResponse(
        summary=record.to_summary(),
        word_cloud=record.to_word_cloud(),
        full_analysis=record.to_full_analysis(),
    )
