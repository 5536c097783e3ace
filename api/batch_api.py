from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, Header

from api import batch_service
from api.security_deps import require_access, require_role
from db import batch_db

router = APIRouter(prefix="/batch-runs", tags=["batch-runs"])
admin_router = APIRouter(prefix="/admin/batch-runs", tags=["admin-batch-runs"])

@router.post("")
def create_batch_run(payload: dict,
                     claims: dict = Depends(require_access),
                     idempotency_key: str | None = Header(default=None)):
    try:
        return batch_service.enqueue_batch(
            claims["tenant_id"],
            items=payload.get("items") or [],
            sub_tasks=payload.get("sub_tasks") or [],
            providers=payload.get("providers") or [],
            triggered_by=claims.get("sub", "unknown"),
            idempotency_key=idempotency_key or payload.get("idempotency_key"),
            scheduled_for=payload.get("scheduled_for"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@router.get("")
def my_batch_runs(status: str | None = None, limit: int = 50, claims: dict = Depends(require_access)):
    runs = batch_db.list_runs(tenant_id=claims["tenant_id"], status=status, limit=limit)
    return {"count": len(runs), "runs": runs}

@router.get("/{run_id}")
def get_batch_run(run_id: str, claims: dict = Depends(require_access)):
    run = batch_db.get_run(run_id, tenant_id=claims["tenant_id"])
    if not run:
        raise HTTPException(status_code=404, detail="batch run not found")
    return {**run, "items": batch_db.list_items(run_id)}

@router.delete("/{run_id}")
def cancel_batch_run(run_id: str, claims: dict = Depends(require_access)):
    try:
        return batch_service.cancel_scheduled_run(claims["tenant_id"], run_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

@admin_router.get("")
def batch_monitor(status: str | None = None, tenant_id: str | None = None, limit: int = 50,
                  claims: dict = Depends(require_role("admin"))):
    runs = batch_db.list_runs(tenant_id=tenant_id, status=status, limit=limit)
    by_status = {}
    for r in runs:
        by_status[r["status"]] = by_status.get(r["status"], 0) + 1
    return {"count": len(runs), "by_status": by_status, "runs": runs}
