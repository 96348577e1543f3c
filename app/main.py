"""
Payment Verification Engine — FastAPI Application Entry Point

/v1/verification/...  → reviewer session workflow
/v1/admin/...         → batch management + deadline processing
/metrics              → Prometheus
/docs                 → OpenAPI / Swagger UI
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.api.admin_endpoint import router as admin_router
from app.api.deps import get_assessor
from app.api.verification_endpoint import router as verification_router
from app.core.config import get_settings
from app.core.exceptions import VerificationError
from app.core.logging import configure_logging

configure_logging(get_settings())
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "verification_engine_starting",
        env=settings.app_env,
        store="sql" if settings.database_url else "memory",
        risk_provider=settings.risk_provider_url or "rules",
    )
    yield
    get_assessor().shutdown()
    logger.info("verification_engine_shutting_down")


app = FastAPI(
    title="Payment Verification Engine",
    description="Weekly payment batch verification, risk scoring and deadline auto-resolution",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)


@app.exception_handler(VerificationError)
async def verification_error_handler(request: Request, exc: VerificationError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, error=type(exc).__name__, status=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Prometheus metrics ──
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── Routes ──
app.include_router(verification_router)
app.include_router(admin_router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "payment-verification-engine",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
