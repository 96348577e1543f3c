"""
/v1/verification — reviewer-facing session workflow.

Thin adapter: bodies are validated here, every rule lives in
app.services.workflow. Domain errors map to JSON by the VerificationError
handler in app.main.
"""
from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from app.api.deps import current_actor, get_workflow
from app.schemas.fraud import PatternDetection
from app.schemas.requests import (
    BatchVerifyRequest,
    CancelRequest,
    CompleteRequest,
    CorrectionRequest,
    PauseRequest,
    VerificationResponse,
)
from app.schemas.verification import (
    BatchVerifyOutcome,
    ProgressSnapshot,
    SessionReport,
    VerificationItem,
    VerificationSession,
)
from app.services.workflow import VerificationOutcome, VerificationWorkflow

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/verification", tags=["verification"])


def _response(outcome: VerificationOutcome) -> VerificationResponse:
    return VerificationResponse(result=outcome.result, progress=outcome.progress, assessment=outcome.assessment)


@router.post(
    "/batches/{batch_id}/sessions",
    response_model=VerificationSession,
    status_code=201,
    summary="Open a verification session for a released batch",
)
def create_session(
    batch_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> VerificationSession:
    return workflow.create_session(actor, batch_id)


@router.post("/sessions/{session_id}/start", response_model=ProgressSnapshot)
def start_session(
    session_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> ProgressSnapshot:
    return workflow.start_session(actor, session_id)


@router.post(
    "/sessions/{session_id}/verify",
    response_model=VerificationResponse,
    summary="Record an approve/reject decision for one transaction",
)
def verify_transaction(
    session_id: str,
    item: VerificationItem,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> VerificationResponse:
    outcome = workflow.verify(
        actor,
        session_id,
        item.transaction_id,
        item.decision,
        rejection_reason=item.rejection_reason,
        verification_time_seconds=item.verification_time_seconds,
        notes=item.notes,
    )
    return _response(outcome)


@router.post(
    "/sessions/{session_id}/verify-batch",
    response_model=BatchVerifyOutcome,
    summary="Record many decisions; failures are reported per item",
)
def verify_batch(
    session_id: str,
    request: BatchVerifyRequest,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> BatchVerifyOutcome:
    return workflow.batch_verify(actor, session_id, request.items)


@router.post(
    "/sessions/{session_id}/auto-verify",
    response_model=BatchVerifyOutcome,
    summary="Apply the automatic decision policy to every undecided transaction",
)
def auto_verify(
    session_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> BatchVerifyOutcome:
    return workflow.auto_verify_pending(actor, session_id)


@router.post("/sessions/{session_id}/correct", response_model=VerificationResponse)
def correct_decision(
    session_id: str,
    request: CorrectionRequest,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> VerificationResponse:
    outcome = workflow.correct(
        actor,
        session_id,
        request.transaction_id,
        request.decision,
        rejection_reason=request.rejection_reason,
        notes=request.notes,
    )
    return _response(outcome)


@router.post("/sessions/{session_id}/pause", response_model=ProgressSnapshot)
def pause_session(
    session_id: str,
    request: PauseRequest,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> ProgressSnapshot:
    return workflow.pause(actor, session_id, request.reason)


@router.post("/sessions/{session_id}/resume", response_model=ProgressSnapshot)
def resume_session(
    session_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> ProgressSnapshot:
    return workflow.resume(actor, session_id)


@router.post("/sessions/{session_id}/complete", response_model=ProgressSnapshot)
def complete_session(
    session_id: str,
    request: CompleteRequest,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> ProgressSnapshot:
    return workflow.complete(actor, session_id, request.notes)


@router.post("/sessions/{session_id}/cancel", response_model=ProgressSnapshot)
def cancel_session(
    session_id: str,
    request: CancelRequest,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> ProgressSnapshot:
    return workflow.cancel(actor, session_id, request.reason)


@router.get("/sessions/{session_id}/progress", response_model=ProgressSnapshot)
def session_progress(
    session_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> ProgressSnapshot:
    return workflow.progress(actor, session_id)


@router.get(
    "/sessions/{session_id}/analytics",
    response_model=SessionReport,
    summary="Approval rates, payment summary, session metrics and decision timeline",
)
def session_analytics(
    session_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> SessionReport:
    return workflow.report(actor, session_id)


@router.get("/sessions/{session_id}/patterns", response_model=list[PatternDetection])
def session_patterns(
    session_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> list[PatternDetection]:
    patterns = workflow.detect_patterns(actor, session_id)
    logger.info("patterns_requested", session_id=session_id, found=len(patterns))
    return patterns
