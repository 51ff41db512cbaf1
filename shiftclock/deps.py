from __future__ import annotations
from typing import Any, Dict
from fastapi import Depends, Header, HTTPException, Request, status
import time
import httpx
import jwt

from .core.config import get_settings
from .services.issuer import TokenIssuer
from .services.validator import TokenValidator

settings = get_settings()

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    key = await get_signing_key()
    try:
        payload = jwt.decode(token, key=key, algorithms=["RS256"], issuer=settings.token_issuer, options={"verify_aud": False})
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def require_display_role(claims: Dict[str, Any] = Depends(get_claims)) -> Dict[str, Any]:
    if claims.get("role") != settings.qr_display_role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{settings.qr_display_role.capitalize()} role required")
    return claims

def get_issuer(request: Request) -> TokenIssuer:
    issuer = getattr(request.app.state, "issuer", None)
    if issuer is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="QR issuer is not running")
    return issuer

def get_validator(request: Request) -> TokenValidator:
    validator = getattr(request.app.state, "validator", None)
    if validator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="QR validator is not configured")
    return validator
