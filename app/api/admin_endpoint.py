"""
Admin API — batch management + deadline job triggers.

Endpoints:
  POST /v1/admin/batches                          → create a draft batch
  GET  /v1/admin/batches                          → list batches, most urgent first
  POST /v1/admin/batches/{id}/transactions        → attach parsed rows (count/amount reconciled)
  POST /v1/admin/batches/{id}/release             → draft → pending_verification

  POST /v1/admin/process-deadlines                → one deadline reconciliation pass
  GET  /v1/admin/countdowns                       → per-session deadline countdowns
  GET  /v1/admin/urgency-statistics               → countdown aggregates
  POST /v1/admin/sessions/{id}/extend-deadline    → push a session deadline out

Deadline operations require the admin role; batch operations are
authorized per business by the workflow.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from app.api.deps import current_actor, get_workflow
from app.core.auth import require_admin
from app.core.config import Settings, get_settings
from app.schemas.deadline import AutoProcessingResult, Countdown, UrgencyStatistics
from app.schemas.requests import (
    AttachTransactionsRequest,
    BatchSummary,
    CreateBatchRequest,
    ExtendDeadlineRequest,
)
from app.schemas.verification import BatchStatus, PaymentBatch, VerificationSession
from app.services import deadline_scheduler
from app.services.audit_publisher import StoreAuditSink
from app.services.workflow import VerificationWorkflow
from app.storage.base import VerificationStore
from app.storage.factory import get_store
from app.verification import batch as batch_rules

logger = structlog.get_logger()
router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ── Batches ──

@router.post("/batches", response_model=PaymentBatch, status_code=201)
def create_batch(
    request: CreateBatchRequest,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> PaymentBatch:
    return workflow.create_batch(actor, request.business_id, request.week_number, request.year, request.totals)


@router.get("/batches", response_model=list[BatchSummary])
def list_batches(
    business_id: Optional[str] = Query(default=None),
    status: Optional[BatchStatus] = Query(default=None),
    _claims: dict = Depends(require_admin),
    store: VerificationStore = Depends(get_store),
) -> list[BatchSummary]:
    now = datetime.now(timezone.utc)
    batches = store.list_batches(business_id=business_id, statuses=[status] if status else None)
    summaries = [
        BatchSummary(
            id=b.id,
            business_id=b.business_id,
            batch_ref=batch_rules.format_batch_id(b),
            status=b.status.value,
            total_transactions=b.total_transactions,
            total_amount=b.total_amount,
            deadline=b.deadline,
            urgency_level=batch_rules.urgency_level(b.deadline, now),
            urgency_score=batch_rules.urgency_score(b, now),
            version=b.version,
        )
        for b in batches
    ]
    summaries.sort(key=lambda s: s.urgency_score, reverse=True)
    return summaries


@router.post("/batches/{batch_id}/transactions", response_model=PaymentBatch)
def attach_transactions(
    batch_id: str,
    request: AttachTransactionsRequest,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> PaymentBatch:
    rows = [row.for_batch(batch_id) for row in request.transactions]
    return workflow.attach_transactions(actor, batch_id, rows)


@router.post("/batches/{batch_id}/release", response_model=PaymentBatch)
def release_batch(
    batch_id: str,
    actor: str = Depends(current_actor),
    workflow: VerificationWorkflow = Depends(get_workflow),
) -> PaymentBatch:
    return workflow.release_batch(actor, batch_id)


# ── Deadlines ──

@router.post(
    "/process-deadlines",
    response_model=AutoProcessingResult,
    summary="Run one deadline reconciliation pass now",
    description="Same pass the scheduler loop runs; safe to call concurrently with it.",
)
def process_deadlines(
    claims: dict = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    store: VerificationStore = Depends(get_store),
) -> AutoProcessingResult:
    logger.info("deadline_pass_triggered", triggered_by=claims.get("sub", "unknown"))
    return deadline_scheduler.reconcile(
        store,
        datetime.now(timezone.utc),
        deadline_scheduler.policy_from_settings(settings),
        StoreAuditSink(store),
    )


@router.get("/countdowns", response_model=list[Countdown])
def list_countdowns(
    business_id: Optional[str] = Query(default=None),
    _claims: dict = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    store: VerificationStore = Depends(get_store),
) -> list[Countdown]:
    return deadline_scheduler.countdowns(
        store,
        datetime.now(timezone.utc),
        deadline_scheduler.policy_from_settings(settings),
        business_id,
    )


@router.get("/urgency-statistics", response_model=UrgencyStatistics)
def urgency_statistics(
    business_id: Optional[str] = Query(default=None),
    _claims: dict = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    store: VerificationStore = Depends(get_store),
) -> UrgencyStatistics:
    return deadline_scheduler.urgency_statistics(
        store,
        datetime.now(timezone.utc),
        deadline_scheduler.policy_from_settings(settings),
        business_id,
    )


@router.post("/sessions/{session_id}/extend-deadline", response_model=VerificationSession)
def extend_deadline(
    session_id: str,
    request: ExtendDeadlineRequest,
    claims: dict = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    store: VerificationStore = Depends(get_store),
) -> VerificationSession:
    return deadline_scheduler.extend_deadline(
        store,
        session_id,
        request.additional_hours,
        request.reason,
        actor_id=claims.get("sub", "unknown"),
        now=datetime.now(timezone.utc),
        audit=StoreAuditSink(store),
        max_retries=settings.max_retries,
    )
