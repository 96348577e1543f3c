"""
Application configuration — loaded from environment / .env file.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # ── App ──
    app_name: str = "payment-verification-engine"
    app_env: str = "development"
    log_level: str = "INFO"
    scoring_model_version: str = "rules-1.0"

    # ── Database ──
    # Empty → in-memory store (local dev / tests)
    database_url: str = ""

    # ── Keycloak / JWT ──
    keycloak_url: str = "https://auth.example.com/realms/verification"
    keycloak_client_id: str = "verification-engine"
    keycloak_audience: str = "verification-engine-api"
    auth_enabled: bool = True
    admin_role: str = "verification-admin"
    jwks_cache_seconds: int = 3600       # signing keys are re-fetched after this

    # ── Risk assessment provider (advisory) ──
    risk_provider_url: str = ""           # empty → local rule-based engine
    assessment_timeout_seconds: float = 3.0
    high_value_amount_sek: float = 500.0   # consult the risk engine at or above this amount

    # ── Decision thresholds ──
    auto_approve_min_quality: int = 90
    auto_reject_max_quality: int = 30
    reject_risk_threshold: float = 70.0
    commission_rate: float = 0.03

    # ── Deadline auto-resolution ──
    auto_approval_enabled: bool = True
    auto_approval_threshold_percentage: float = 30.0
    auto_approval_risk_threshold: float = 70.0
    grace_period_hours: float = 2.0
    scheduler_interval_seconds: int = 120

    # ── Workflow ──
    max_retries: int = 3
    verification_window_days: int = 7
    pause_cutoff_hours: float = 6.0
    batch_min_year: int = 2024
    batch_max_year: int = 2030

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
