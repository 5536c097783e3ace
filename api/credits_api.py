from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, Header

from api import credit_service
from api.security_deps import require_access, require_role

router = APIRouter(prefix="/credits", tags=["credits"])
admin_router = APIRouter(prefix="/admin/credits", tags=["admin-credits"])

def _key(payload: dict, header_key: str | None) -> str:
    key = payload.get("idempotency_key") or header_key or ""
    if not key:
        raise HTTPException(status_code=400, detail="idempotency_key required")
    return key

def _amount(payload: dict) -> int:
    try:
        return int(payload.get("amount", 0))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="amount must be an integer")

@router.get("/balance")
def balance(claims: dict = Depends(require_access)):
    tenant_id = claims["tenant_id"]
    credit_service.ensure_balance(tenant_id)
    return credit_service.get_balance(tenant_id)

@router.post("/debit")
def debit(payload: dict,
          claims: dict = Depends(require_access),
          idempotency_key: str | None = Header(default=None)):
    feature_type = payload.get("feature_type", "")
    if not feature_type:
        raise HTTPException(status_code=400, detail="feature_type required")
    try:
        out = credit_service.debit(
            claims["tenant_id"],
            _amount(payload),
            feature_type=feature_type,
            idempotency_key=_key(payload, idempotency_key),
            feature_metadata=payload.get("feature_metadata") or {},
            description=payload.get("description", ""),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "balance": out}

@router.post("/refund")
def refund(payload: dict,
           claims: dict = Depends(require_access),
           idempotency_key: str | None = Header(default=None)):
    try:
        out = credit_service.refund_feature(
            claims["tenant_id"],
            _amount(payload),
            _key(payload, idempotency_key),
            feature_type=payload.get("feature_type", ""),
            feature_metadata=payload.get("feature_metadata") or {},
            description=payload.get("description", ""),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "balance": out}

@router.get("/ledger")
def ledger(limit: int = 50, offset: int = 0, feature_type: str | None = None, kind: str | None = None,
           claims: dict = Depends(require_access)):
    return credit_service.get_ledger(claims["tenant_id"], limit=limit, offset=offset, feature_type=feature_type, kind=kind)

@admin_router.post("/grant")
def grant(payload: dict, claims: dict = Depends(require_role("admin"))):
    tenant_id = payload.get("tenant_id", "")
    if not tenant_id:
        raise HTTPException(status_code=400, detail="tenant_id required")
    try:
        out = credit_service.grant(
            tenant_id,
            _amount(payload),
            credit_type=payload.get("credit_type", "purchased"),
            idempotency_key=_key(payload, None),
            transaction_type=payload.get("transaction_type", "purchase"),
            description=payload.get("description", ""),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "balance": out}
