"""
Risk assessment providers.

The verification workflow treats risk assessment as advisory: it asks a
provider for a FraudAssessment with a hard time bound and falls back to the
rule-based default on timeout or failure. Two providers:

  RuleBasedRiskProvider  — local weighted-factor engine (app.scoring.engine)
  HttpRiskProvider       — remote assessment service over HTTP (httpx)
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Optional, Protocol

import httpx
import structlog
from pydantic import ValidationError as PayloadError

from app.core.config import Settings
from app.core.exceptions import AssessmentUnavailable
from app.core.metrics import ASSESSMENT_FALLBACKS
from app.schemas.fraud import AssessmentSource, FraudAssessment, TransactionContext
from app.scoring import engine

logger = structlog.get_logger()


class RiskProvider(Protocol):
    def assess(self, context: TransactionContext) -> FraudAssessment: ...


class RuleBasedRiskProvider:
    def assess(self, context: TransactionContext) -> FraudAssessment:
        return engine.evaluate(context)


class HttpRiskProvider:
    """
    POST {base_url}/v1/assess with the transaction context; the response body
    is a FraudAssessment. Any transport, status or payload error surfaces as
    AssessmentUnavailable.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 3.0, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout_seconds)

    def assess(self, context: TransactionContext) -> FraudAssessment:
        try:
            resp = self._client.post("/v1/assess", json=context.model_dump(mode="json"))
            resp.raise_for_status()
            body = resp.json()
            body.setdefault("transaction_id", context.transaction_id)
            body.setdefault("assessed_at", datetime.now(timezone.utc).isoformat())
            body["source"] = AssessmentSource.PROVIDER.value
            return FraudAssessment.model_validate(body)
        except httpx.HTTPError as e:
            raise AssessmentUnavailable(f"Risk provider request failed: {e}") from e
        except (ValueError, PayloadError) as e:
            raise AssessmentUnavailable(f"Risk provider returned an invalid assessment: {e}") from e

    def close(self) -> None:
        self._client.close()


def build_provider(settings: Settings) -> RiskProvider:
    if settings.risk_provider_url:
        return HttpRiskProvider(settings.risk_provider_url, settings.assessment_timeout_seconds)
    return RuleBasedRiskProvider()


class BoundedAssessor:
    """
    Runs provider.assess with a wall-clock limit. Never raises: a timeout or
    provider error yields engine.fallback_assessment for the same context.
    """

    def __init__(self, provider: RiskProvider, timeout_seconds: float = 3.0, max_workers: int = 4):
        self._provider = provider
        self._timeout = timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="risk-assess")

    def assess(self, context: TransactionContext) -> FraudAssessment:
        future = self._pool.submit(self._provider.assess, context)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout:
            future.cancel()
            return self._fallback(context, "timeout", f"no response within {self._timeout:g}s")
        except AssessmentUnavailable as e:
            return self._fallback(context, "unavailable", e.message)
        except Exception as e:
            return self._fallback(context, "error", str(e))

    def _fallback(self, context: TransactionContext, reason: str, error: str) -> FraudAssessment:
        ASSESSMENT_FALLBACKS.labels(reason=reason).inc()
        logger.warning(
            "risk_assessment_fallback",
            transaction_id=context.transaction_id,
            reason=reason,
            error=error,
        )
        return engine.fallback_assessment(context, error)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
