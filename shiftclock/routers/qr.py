from __future__ import annotations
from io import BytesIO
from fastapi import APIRouter, Depends, HTTPException, Response

from ..deps import get_claims, get_issuer, get_validator, require_display_role
from ..schemas import QRCurrentResponse, QRValidateRequest, ValidationOutcome
from ..services.issuer import TokenIssuer
from ..services.validator import TokenValidator

router = APIRouter(prefix="/qr", tags=["qr"])

# --- 1) Display: current token state for the kiosk screen
@router.get("/current", response_model=QRCurrentResponse)
async def current_token(claims: dict = Depends(require_display_role), issuer: TokenIssuer = Depends(get_issuer)):
    return QRCurrentResponse(**issuer.snapshot())

@router.get("/current.png")
async def current_token_png(claims: dict = Depends(require_display_role), issuer: TokenIssuer = Depends(get_issuer)):
    import qrcode
    snap = issuer.snapshot()
    if snap["status"] != "ready" or not snap["value"]:
        raise HTTPException(status_code=404, detail=snap["message"] or "No QR token available")
    img = qrcode.make(snap["value"])
    b = BytesIO(); img.save(b, format="PNG")
    return Response(content=b.getvalue(), media_type="image/png", headers={"Cache-Control": "no-store"})

# --- 2) Ad-hoc check of a scanned value against the latest token
@router.post("/validate", response_model=ValidationOutcome, response_model_by_alias=True)
async def validate_token(payload: QRValidateRequest, claims: dict = Depends(get_claims), validator: TokenValidator = Depends(get_validator)):
    return await validator.validate(payload.token)
