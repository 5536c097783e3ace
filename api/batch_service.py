from __future__ import annotations
import logging
from typing import Any, Dict, List

import jsonschema
from sqlalchemy.exc import IntegrityError

from api import credit_service
from api.errors import RunAlreadyActive
from api.pricing import LLM_PROVIDERS, estimate_run_cost
from db import batch_db
from db.ledger_db import new_id, now
from db.models import FAILED, PENDING, SUB_TASKS
from sdk.check_registry import CHECK_IMPLS

logger = logging.getLogger(__name__)

BATCH_SCHEMA = {
    "type": "object",
    "properties": {
        "items": {"type": "array", "items": {"type": "object"}, "minItems": 1, "maxItems": 500},
        "sub_tasks": {"type": "array", "items": {"enum": list(SUB_TASKS)}, "minItems": 1, "uniqueItems": True},
        "providers": {"type": "array", "items": {"enum": list(LLM_PROVIDERS)}, "uniqueItems": True},
        "scheduled_for": {"type": ["integer", "null"]},
    },
    "required": ["items", "sub_tasks"],
}

def _validate(payload: Dict[str, Any]) -> None:
    try:
        jsonschema.validate(instance=payload, schema=BATCH_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ValueError(f"invalid batch request: {e.message}")
    if "llm_visibility" in payload["sub_tasks"] and not payload.get("providers"):
        raise ValueError("invalid batch request: llm_visibility needs at least one provider")
    # an item a runner rejects would be charged for a check that can only fail
    for sub_task in payload["sub_tasks"]:
        runner = CHECK_IMPLS[sub_task]()
        for pos, item in enumerate(payload["items"]):
            try:
                runner.validate_input(item)
            except jsonschema.ValidationError as e:
                raise ValueError(f"invalid batch request: item {pos} cannot be checked for {sub_task}: {e.message}")

def _response(run: Dict[str, Any], tenant_id: str) -> Dict[str, Any]:
    return {
        "run_id": run["run_id"],
        "estimated_credits": run["estimated_credits"],
        "balance": credit_service.get_balance(tenant_id),
    }

def _refund_enqueue(tenant_id: str, amount: int, debit_key: str) -> None:
    credit_service.refund_feature(tenant_id, amount, debit_key, feature_type="concept_check",
                                  description="Refund: batch run could not be created")

def enqueue_batch(
    tenant_id: str,
    items: List[Dict[str, Any]],
    sub_tasks: List[str],
    providers: List[str] | None = None,
    triggered_by: str = "",
    idempotency_key: str | None = None,
    scheduled_for: int | None = None,
) -> Dict[str, Any]:
    """Debit the estimated cost, then queue the run. Nothing is queued unless the debit succeeded."""
    providers = list(providers or [])
    _validate({"items": items, "sub_tasks": sub_tasks, "providers": providers, "scheduled_for": scheduled_for})
    sub_tasks = [s for s in SUB_TASKS if s in sub_tasks]

    if idempotency_key:
        existing = batch_db.find_by_request_key(tenant_id, idempotency_key)
        if existing:
            logger.info("Replayed batch request %s for %s -> run %s", idempotency_key, tenant_id, existing["run_id"])
            return _response(existing, tenant_id)

    ts = now()
    is_future = scheduled_for is not None and scheduled_for > ts
    if not is_future:
        active = batch_db.find_active_immediate(tenant_id, ts)
        if active:
            raise RunAlreadyActive(active["run_id"], active["status"])

    cost = estimate_run_cost(items, sub_tasks, providers)
    if cost["total"] <= 0:
        raise ValueError("invalid batch request: nothing billable to check")

    debit_key = f"batch:{tenant_id}:{idempotency_key or new_id()}"
    if idempotency_key and credit_service.is_refunded(tenant_id, debit_key):
        # an earlier attempt with this key was charged and refunded; charge afresh
        debit_key = f"{debit_key}:{new_id()}"
    credit_service.ensure_balance(tenant_id)
    credit_service.debit(
        tenant_id,
        cost["total"],
        feature_type="concept_check",
        idempotency_key=debit_key,
        feature_metadata={"sub_tasks": sub_tasks, "providers": providers, "items": len(items), "breakdown": cost["breakdown"]},
        description=f"Batch check: {len(items)} items",
    )

    try:
        run_id = batch_db.enqueue(
            tenant_id, items, sub_tasks, providers,
            estimated_credits=cost["total"],
            idempotency_key=debit_key,
            request_key=idempotency_key,
            triggered_by=triggered_by,
            scheduled_for_ts=scheduled_for if is_future else None,
        )
    except IntegrityError:
        existing = batch_db.find_by_request_key(tenant_id, idempotency_key) if idempotency_key else None
        if existing is not None:
            # a concurrent twin with the same request key enqueued first; it
            # shares our debit unless one of us had to charge under a fresh key
            if existing["idempotency_key"] != debit_key:
                _refund_enqueue(tenant_id, cost["total"], debit_key)
            return _response(existing, tenant_id)
        _refund_enqueue(tenant_id, cost["total"], debit_key)
        active = batch_db.find_active_slot(tenant_id)
        if active is not None and not is_future:
            raise RunAlreadyActive(active["run_id"], active["status"])
        raise
    except Exception:
        logger.exception("Enqueue failed for %s, refunding %d credits", tenant_id, cost["total"])
        _refund_enqueue(tenant_id, cost["total"], debit_key)
        raise

    return {"run_id": run_id, "estimated_credits": cost["total"], "balance": credit_service.get_balance(tenant_id)}

def cancel_scheduled_run(tenant_id: str, run_id: str) -> Dict[str, Any]:
    run = batch_db.get_run(run_id, tenant_id=tenant_id)
    if run is None:
        raise LookupError(f"batch run not found: {run_id}")
    if run["status"] != PENDING or not run["scheduled_for_ts"] or run["scheduled_for_ts"] <= now():
        raise ValueError("only a pending run scheduled for the future can be cancelled")

    estimated = int(run["estimated_credits"] or 0)
    if estimated > 0:
        credit_service.refund_feature(
            tenant_id, estimated, run["idempotency_key"],
            feature_type=run["feature_type"],
            feature_metadata={"run_id": run_id, "reason": "cancelled"},
            description=f"Refund for cancelled batch run {run_id}",
        )
    batch_db.mark_run_terminal(run_id, FAILED, "Cancelled by user", actual_credits_used=0, refunded_credits=estimated)
    logger.info("Cancelled scheduled run %s for %s, refunded %d", run_id, tenant_id, estimated)
    return {"run_id": run_id, "status": FAILED, "refunded_credits": estimated, "balance": credit_service.get_balance(tenant_id)}
