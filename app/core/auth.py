"""
Keycloak JWT authentication and business-scoped authorization.

Bearer tokens are checked against the realm's JWKS; the claims then become
the authorize(actor, business) capability the verification workflow
consumes. AUTH_ENABLED=false hands every request a local admin identity.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

import httpx
import structlog
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import Settings, get_settings

logger = structlog.get_logger()
bearer = HTTPBearer(auto_error=False)

# (fetched_at, jwks)
_signing_keys: tuple[float, dict] = (0.0, {})


async def _jwks(settings: Settings, refresh: bool = False) -> dict:
    global _signing_keys
    fetched_at, keys = _signing_keys
    if keys and not refresh and time.monotonic() - fetched_at < settings.jwks_cache_seconds:
        return keys

    async with httpx.AsyncClient(timeout=5.0) as client:
        resp = await client.get(f"{settings.keycloak_url}/protocol/openid-connect/certs")
        resp.raise_for_status()
    _signing_keys = (time.monotonic(), resp.json())
    logger.info("jwks_refreshed", keys=len(_signing_keys[1].get("keys", [])))
    return _signing_keys[1]


async def _signing_key(token: str, settings: Settings) -> dict:
    kid = jwt.get_unverified_header(token).get("kid")
    for refresh in (False, True):
        # A rotated realm key shows up as an unknown kid; re-fetch once
        keys = await _jwks(settings, refresh=refresh)
        match = next((k for k in keys.get("keys", []) if k.get("kid") == kid), None)
        if match:
            return match
    raise HTTPException(status_code=401, detail="Invalid token signing key")


def _normalise_claims(payload: dict) -> dict:
    """Keycloak nests realm roles under realm_access; flatten them."""
    payload.setdefault("roles", payload.get("realm_access", {}).get("roles", []))
    payload.setdefault("business_ids", [])
    return payload


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer),
    settings: Settings = Depends(get_settings),
) -> dict:
    """FastAPI dependency returning the validated token claims."""
    if not settings.auth_enabled:
        return {"sub": "dev-user", "roles": [settings.admin_role], "business_ids": []}
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    token = credentials.credentials
    try:
        payload = jwt.decode(
            token,
            await _signing_key(token, settings),
            algorithms=["RS256"],
            audience=settings.keycloak_audience,
            issuer=settings.keycloak_url,
        )
    except JWTError as e:
        logger.warning("jwt_validation_failed", error=str(e))
        raise HTTPException(status_code=401, detail=f"Token validation failed: {e}")
    return _normalise_claims(payload)


# ── Business-scoped authorization ──

def authorizer_for(claims: dict, settings: Settings) -> Callable[[str, str], bool]:
    """
    authorize(actor, business) for the workflow, built from token claims:
    admins act for any business, everyone else only for the businesses
    listed in the `business_ids` claim.
    """
    roles = set(claims.get("roles", []))
    allowed = set(claims.get("business_ids", []))

    def authorize(actor_id: str, business_id: str) -> bool:
        if settings.admin_role in roles:
            return True
        return actor_id == claims.get("sub") and business_id in allowed

    return authorize


def require_admin(
    claims: dict = Depends(verify_token),
    settings: Settings = Depends(get_settings),
) -> dict:
    if settings.admin_role not in claims.get("roles", []):
        logger.warning("admin_role_required", sub=claims.get("sub"))
        raise HTTPException(status_code=403, detail="Admin role required")
    return claims
