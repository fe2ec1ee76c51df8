"""
JWT Token Verification — OIDC-Compatible

Tokens come from AWS Cognito or Auth0; both sign with RS256 against a
rotating key set published at <issuer>/.well-known/jwks.json.

  Cognito claims: sub, email, custom:tenant_id, custom:role, cognito:groups
  Auth0 claims:   sub, email, https://<api>/tenant_id, https://<api>/role

The JWKS document is cached per issuer for an hour. An unknown kid forces
one refresh before the token is rejected, which covers key rotation.

Roles (lowest → highest privilege):
  student      read sources of the tenant
  instructor   add and delete knowledge sources
  org_admin    tenant administrator
  super_admin  platform operator
"""

from __future__ import annotations

import logging
import time
from typing import Annotated
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from knowledge_sources.core.config import settings

logger = logging.getLogger(__name__)

ROLES: tuple[str, ...] = ("student", "instructor", "org_admin", "super_admin")
DEFAULT_ROLE = "student"

bearer_scheme = HTTPBearer(auto_error=True)


class TokenPayload(BaseModel):
    """Parsed, validated JWT claims: passed to route handlers."""
    sub:       str
    email:     str
    tenant_id: UUID
    role:      str          # one of ROLES
    exp:       int
    iss:       str


# ─────────────────────────────────────────────────────────────────────────────
# JWKS cache
# ─────────────────────────────────────────────────────────────────────────────

class JWKSCache:
    """In-memory JWKS cache keyed by issuer, shared by every request."""

    _TTL: int = 3600

    def __init__(self) -> None:
        self._store: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)

    async def get_signing_key(self, token: str, issuer: str | None = None):
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED, detail="Malformed token header",
            ) from exc

        kid    = header.get("kid")
        issuer = issuer or settings.auth_issuer

        for attempt in range(2):
            if attempt == 1:
                self._store.pop(issuer, None)   # force refresh

            jwks = await self._fetch(issuer)
            for key_data in jwks.get("keys", []):
                if key_data.get("kid") == kid:
                    return jwk.construct(key_data).public_key()

        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail=f"No signing key found for kid={kid!r}.",
        )

    async def _fetch(self, issuer: str) -> dict:
        now    = time.monotonic()
        cached = self._store.get(issuer)
        if cached and (now - cached[1]) < self._TTL:
            return cached[0]

        uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
        try:
            async with httpx.AsyncClient(timeout=10.0) as http:
                resp = await http.get(uri)
                resp.raise_for_status()
                jwks = resp.json()
        except httpx.HTTPError as exc:
            logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Unable to retrieve token signing keys.",
            ) from exc

        self._store[issuer] = (jwks, now)
        logger.debug("JWKS refreshed | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
        return jwks

    def prime(self, issuer: str, jwks: dict) -> None:
        """Install a JWKS document without fetching it (tests, offline tooling)."""
        self._store[issuer] = (jwks, time.monotonic())

    def clear(self) -> None:
        self._store.clear()


jwks_cache = JWKSCache()


# ─────────────────────────────────────────────────────────────────────────────
# Claim extractors (Cognito vs Auth0 have different claim names)
# ─────────────────────────────────────────────────────────────────────────────

def _extract_tenant_id(claims: dict) -> UUID:
    raw = (
        claims.get("custom:tenant_id")
        or claims.get(f"{settings.auth0_namespace}/tenant_id")
        or claims.get("tenant_id")
    )
    if not raw:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing the required tenant_id claim.",
        )
    try:
        return UUID(str(raw))
    except ValueError:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid tenant_id value in token: {raw!r}",
        )


def _extract_role(claims: dict) -> str:
    role = (
        claims.get("custom:role")
        or claims.get(f"{settings.auth0_namespace}/role")
        or claims.get("role")
    )
    if not role and "cognito:groups" in claims:
        groups = claims["cognito:groups"]
        role = groups[0] if groups else None

    if role not in ROLES:
        logger.warning("Unknown role %r in token, defaulting to %s", role, DEFAULT_ROLE)
        return DEFAULT_ROLE
    return role


# ─────────────────────────────────────────────────────────────────────────────
# Verification
# ─────────────────────────────────────────────────────────────────────────────

async def verify_token(
    token: str,
    *,
    issuer:   str | None = None,
    audience: str | None = None,
    cache:    JWKSCache | None = None,
) -> TokenPayload:
    """
    Verify signature, expiry, issuer and audience, then build a TokenPayload.
    tenant_id is only ever taken from the token, never from the request.
    """
    issuer   = issuer or settings.auth_issuer
    audience = audience or settings.auth_audience
    cache    = cache or jwks_cache

    signing_key = await cache.get_signing_key(token, issuer=issuer)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=audience,
            issuer=issuer,
            options={"verify_exp": True},
        )
    except ExpiredSignatureError:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired. Please re-authenticate.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except JWTError as exc:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {exc}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        tenant_id=_extract_tenant_id(claims),
        role=_extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def get_current_user(
    request:     Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    """FastAPI dependency: the verified caller of this request."""
    try:
        return await verify_token(credentials.credentials)
    except HTTPException:
        logger.info(
            "Authentication rejected | request_id=%s",
            request.headers.get("X-Request-ID", "-"),
        )
        raise
