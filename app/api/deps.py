"""
FastAPI dependencies shared by the verification and admin routers.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from app.core.auth import authorizer_for, verify_token
from app.core.config import Settings, get_settings
from app.services.audit_publisher import StoreAuditSink
from app.services.risk_provider import BoundedAssessor, build_provider
from app.services.workflow import VerificationWorkflow, WorkflowConfig
from app.storage.base import VerificationStore
from app.storage.factory import get_store


@lru_cache
def get_assessor() -> BoundedAssessor:
    settings = get_settings()
    return BoundedAssessor(build_provider(settings), settings.assessment_timeout_seconds)


def get_workflow(
    claims: dict = Depends(verify_token),
    settings: Settings = Depends(get_settings),
    store: VerificationStore = Depends(get_store),
    assessor: BoundedAssessor = Depends(get_assessor),
) -> VerificationWorkflow:
    return VerificationWorkflow(
        store=store,
        assessor=assessor,
        authorize=authorizer_for(claims, settings),
        audit=StoreAuditSink(store),
        config=WorkflowConfig.from_settings(settings),
    )


def current_actor(claims: dict = Depends(verify_token)) -> str:
    return claims.get("sub", "unknown")
