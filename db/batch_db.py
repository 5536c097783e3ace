"""
Batch run queue.

Runs move pending -> processing -> completed | failed and never back.
Only one orchestrator pass works a run at a time: claiming stamps a
claim_token on the row with a conditional UPDATE, and every later write
made on behalf of that pass checks the token is still ours. A claim older
than STUCK_RUN_MINUTES is treated as abandoned and may be taken over.
"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from api.config import RUN_TIMEOUT_MINUTES, STUCK_RUN_MINUTES
from api.errors import ClaimLost
from db.database import SessionLocal
from db.ledger_db import new_id, now
from db.models import (
    BatchRun, BatchRunItem, COMPLETED, FAILED, PENDING, PROCESSING, SUB_TASKS, TERMINAL, status_column,
)

logger = logging.getLogger(__name__)

CLAIM_CANDIDATES = 5

@dataclass(frozen=True)
class RunClaim:
    run_id: str
    token: str

def enabled_sub_tasks(run: BatchRun) -> List[str]:
    return [s for s in SUB_TASKS if getattr(run, status_column(s)) is not None]

# ----------------------------
# enqueue / lookups
# ----------------------------
def enqueue(
    tenant_id: str,
    items: List[Dict[str, Any]],
    sub_tasks: List[str],
    providers: List[str],
    *,
    estimated_credits: int,
    idempotency_key: str,
    request_key: str | None = None,
    triggered_by: str = "",
    feature_type: str = "concept_check",
    scheduled_for_ts: int | None = None,
) -> str:
    """Insert the run and all of its items in one transaction. Returns the run id."""
    for s in sub_tasks:
        status_column(s)
    ts = now()
    run_id = new_id()
    enabled = {status_column(s): PENDING for s in sub_tasks}

    db: Session = SessionLocal()
    try:
        db.add(BatchRun(
            run_id=run_id,
            tenant_id=tenant_id,
            status=PENDING,
            feature_type=feature_type,
            providers_json=json.dumps(list(providers)),
            total_items=len(items),
            processed_items=0,
            successful_items=0,
            failed_items=0,
            estimated_credits=int(estimated_credits),
            actual_credits_used=0,
            refunded_credits=0,
            idempotency_key=idempotency_key,
            request_key=request_key,
            active_tenant_id=None if scheduled_for_ts else tenant_id,
            triggered_by=triggered_by,
            errors_json="[]",
            scheduled_for_ts=scheduled_for_ts,
            created_ts=ts,
            updated_ts=ts,
            **enabled,
        ))
        # the run row must exist before items reference it
        db.flush()
        for pos, item in enumerate(items):
            db.add(BatchRunItem(
                item_id=new_id(),
                batch_run_id=run_id,
                position=pos,
                reference_id=str(item.get("reference_id") or item.get("phrase") or pos),
                reference_type=item.get("reference_type", "keyword"),
                payload_json=json.dumps(item),
                retries_json="{}",
                result_json="{}",
                errors_json="{}",
                created_ts=ts,
                updated_ts=ts,
                **enabled,
            ))
        db.commit()
    finally:
        db.close()

    logger.info("Enqueued run %s for %s: %d items, sub-tasks=%s, %d credits", run_id, tenant_id, len(items), sub_tasks, estimated_credits)
    return run_id

def find_by_request_key(tenant_id: str, request_key: str) -> Optional[Dict[str, Any]]:
    db: Session = SessionLocal()
    try:
        run = db.query(BatchRun).filter(BatchRun.tenant_id == tenant_id, BatchRun.request_key == request_key).first()
        return run_to_dict(run) if run else None
    finally:
        db.close()

def find_active_immediate(tenant_id: str, ts: int | None = None) -> Optional[Dict[str, Any]]:
    """A pending/processing run of this tenant that is not parked for a future time."""
    ts = ts if ts is not None else now()
    db: Session = SessionLocal()
    try:
        run = db.query(BatchRun).filter(
            BatchRun.tenant_id == tenant_id,
            BatchRun.status.in_((PENDING, PROCESSING)),
            or_(BatchRun.scheduled_for_ts.is_(None), BatchRun.scheduled_for_ts <= ts),
        ).order_by(BatchRun.created_ts).first()
        return run_to_dict(run) if run else None
    finally:
        db.close()

def find_active_slot(tenant_id: str) -> Optional[Dict[str, Any]]:
    """The open immediate run holding the tenant's single active slot, if any."""
    db: Session = SessionLocal()
    try:
        run = db.query(BatchRun).filter(BatchRun.active_tenant_id == tenant_id).first()
        return run_to_dict(run) if run else None
    finally:
        db.close()

def get_run(run_id: str, tenant_id: str | None = None) -> Optional[Dict[str, Any]]:
    db: Session = SessionLocal()
    try:
        q = db.query(BatchRun).filter(BatchRun.run_id == run_id)
        if tenant_id:
            q = q.filter(BatchRun.tenant_id == tenant_id)
        run = q.first()
        return run_to_dict(run) if run else None
    finally:
        db.close()

def list_runs(tenant_id: str | None = None, status: str | None = None, limit: int = 50) -> List[Dict[str, Any]]:
    db: Session = SessionLocal()
    try:
        q = db.query(BatchRun)
        if tenant_id:
            q = q.filter(BatchRun.tenant_id == tenant_id)
        if status:
            q = q.filter(BatchRun.status == status)
        rows = q.order_by(BatchRun.created_ts.desc(), BatchRun.run_id).limit(min(limit, 200)).all()
        return [run_to_dict(r) for r in rows]
    finally:
        db.close()

def list_items(run_id: str) -> List[Dict[str, Any]]:
    db: Session = SessionLocal()
    try:
        rows = db.query(BatchRunItem).filter(BatchRunItem.batch_run_id == run_id).order_by(BatchRunItem.position).all()
        return [item_to_dict(r) for r in rows]
    finally:
        db.close()

def pending_items(run_id: str, sub_task: str, limit: int) -> List[Dict[str, Any]]:
    col = getattr(BatchRunItem, status_column(sub_task))
    db: Session = SessionLocal()
    try:
        rows = db.query(BatchRunItem).filter(
            BatchRunItem.batch_run_id == run_id, col == PENDING,
        ).order_by(BatchRunItem.position).limit(limit).all()
        return [item_to_dict(r) for r in rows]
    finally:
        db.close()

def sub_task_counts(run_id: str, sub_task: str) -> Dict[str, int]:
    """{status: item count} for one sub-task of a run."""
    col = getattr(BatchRunItem, status_column(sub_task))
    db: Session = SessionLocal()
    try:
        rows = db.query(col).filter(BatchRunItem.batch_run_id == run_id).all()
        out = {PENDING: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
        for (st,) in rows:
            if st in out:
                out[st] += 1
        return out
    finally:
        db.close()

# ----------------------------
# claims
# ----------------------------
def _claimable(ts: int):
    lease_cutoff = ts - STUCK_RUN_MINUTES * 60
    return and_(
        BatchRun.status.in_((PENDING, PROCESSING)),
        or_(BatchRun.scheduled_for_ts.is_(None), BatchRun.scheduled_for_ts <= ts),
        or_(BatchRun.claim_token.is_(None), BatchRun.claimed_ts < lease_cutoff),
    )

def claim_oldest_pending(ts: int | None = None) -> Optional[RunClaim]:
    """
    Take the oldest eligible run. The UPDATE repeats the eligibility filter,
    so of several concurrent claimants exactly one sees rowcount == 1.
    """
    ts = ts if ts is not None else now()
    db: Session = SessionLocal()
    try:
        candidates = db.query(BatchRun.run_id, BatchRun.status).filter(_claimable(ts)).order_by(
            BatchRun.created_ts, BatchRun.run_id).limit(CLAIM_CANDIDATES).all()
        for run_id, was in candidates:
            token = new_id()
            stmt = (
                update(BatchRun)
                .where(BatchRun.run_id == run_id, _claimable(ts))
                .values(
                    claim_token=token,
                    claimed_ts=ts,
                    status=PROCESSING,
                    started_ts=func.coalesce(BatchRun.started_ts, ts),
                    updated_ts=ts,
                )
                .execution_options(synchronize_session=False)
            )
            if db.execute(stmt).rowcount == 1:
                db.commit()
                logger.info("Claimed run %s (was %s)", run_id, was)
                return RunClaim(run_id, token)
            db.rollback()
            logger.info("Run %s claimed by another invocation", run_id)
        return None
    finally:
        db.close()

def release_claim(claim: RunClaim) -> bool:
    db: Session = SessionLocal()
    try:
        stmt = (
            update(BatchRun)
            .where(BatchRun.run_id == claim.run_id, BatchRun.claim_token == claim.token)
            .values(claim_token=None, claimed_ts=None, updated_ts=now())
            .execution_options(synchronize_session=False)
        )
        released = db.execute(stmt).rowcount == 1
        db.commit()
        return released
    finally:
        db.close()

def _held_run(db: Session, run_id: str, token: str | None) -> BatchRun:
    run = db.query(BatchRun).filter(BatchRun.run_id == run_id).first()
    if run is None:
        raise ValueError(f"batch run not found: {run_id}")
    if token is not None and run.claim_token != token:
        raise ClaimLost(run_id)
    return run

def reset_orphaned_items(db: Session, run_id: str) -> int:
    """Item checks left `processing` by a pass that died go back to `pending`."""
    reset = 0
    for sub_task in SUB_TASKS:
        col = getattr(BatchRunItem, status_column(sub_task))
        reset += db.execute(
            update(BatchRunItem)
            .where(BatchRunItem.batch_run_id == run_id, col == PROCESSING)
            .values({status_column(sub_task): PENDING, "updated_ts": now()})
            .execution_options(synchronize_session=False)
        ).rowcount
    return reset

def recover_claimed_run(claim: RunClaim) -> int:
    db: Session = SessionLocal()
    try:
        _held_run(db, claim.run_id, claim.token)
        n = reset_orphaned_items(db, claim.run_id)
        db.commit()
        if n:
            logger.warning("Run %s: %d interrupted item checks reset to pending", claim.run_id, n)
        return n
    finally:
        db.close()

def sweep_stuck_runs(ts: int | None = None) -> Dict[str, int]:
    """
    Expired claims are dropped and their in-flight item checks reset.
    Unclaimed runs that recorded no check outcome for RUN_TIMEOUT_MINUTES get
    every unfinished item check failed with "Timed out"; the next pass
    finalizes them. Runs still making progress are left alone.
    """
    ts = ts if ts is not None else now()
    lease_cutoff = ts - STUCK_RUN_MINUTES * 60
    timeout_cutoff = ts - RUN_TIMEOUT_MINUTES * 60
    released, timed_out = 0, 0

    db: Session = SessionLocal()
    try:
        stale = db.query(BatchRun).filter(
            BatchRun.status.in_((PENDING, PROCESSING)),
            BatchRun.claim_token.isnot(None),
            BatchRun.claimed_ts < lease_cutoff,
        ).all()
        for run in stale:
            reset = reset_orphaned_items(db, run.run_id)
            run.claim_token = None
            run.claimed_ts = None
            run.updated_ts = ts
            released += 1
            logger.warning("Run %s: claim expired, %d item checks reset to pending", run.run_id, reset)
        db.commit()

        expired = db.query(BatchRun).filter(
            BatchRun.status == PROCESSING,
            BatchRun.claim_token.is_(None),
            func.coalesce(BatchRun.last_progress_ts, BatchRun.started_ts) < timeout_cutoff,
        ).all()
        for run in expired:
            subs = enabled_sub_tasks(run)
            items = db.query(BatchRunItem).filter(BatchRunItem.batch_run_id == run.run_id).all()
            for item in items:
                errors = json.loads(item.errors_json or "{}")
                for s in subs:
                    if getattr(item, status_column(s)) not in TERMINAL:
                        setattr(item, status_column(s), FAILED)
                        errors[s] = "Timed out"
                item.errors_json = json.dumps(errors)
                item.updated_ts = ts
            run.updated_ts = ts
            timed_out += 1
            logger.warning("Run %s made no progress for %d minutes, unfinished checks marked failed", run.run_id, RUN_TIMEOUT_MINUTES)
        db.commit()
    finally:
        db.close()

    return {"released": released, "timed_out": timed_out}

# ----------------------------
# mutations made while holding a claim
# ----------------------------
def update_item_status(
    item_id: str,
    sub_task: str,
    status: str,
    result: Dict[str, Any] | None = None,
    error: str | None = None,
    retry: bool = False,
    token: str | None = None,
) -> None:
    col = status_column(sub_task)
    db: Session = SessionLocal()
    try:
        item = db.query(BatchRunItem).filter(BatchRunItem.item_id == item_id).first()
        if item is None:
            raise ValueError(f"batch item not found: {item_id}")
        run = _held_run(db, item.batch_run_id, token)
        ts = now()

        if retry:
            retries = json.loads(item.retries_json or "{}")
            retries[sub_task] = retries.get(sub_task, 0) + 1
            item.retries_json = json.dumps(retries)
        if retry or status in TERMINAL:
            run.last_progress_ts = ts
        if result is not None:
            results = json.loads(item.result_json or "{}")
            results[sub_task] = result
            item.result_json = json.dumps(results)
        if error is not None:
            errors = json.loads(item.errors_json or "{}")
            errors[sub_task] = error
            item.errors_json = json.dumps(errors)
        setattr(item, col, status)
        item.updated_ts = ts
        db.commit()
    finally:
        db.close()

def set_sub_task_status(run_id: str, sub_task: str, status: str, token: str, error: str | None = None) -> None:
    db: Session = SessionLocal()
    try:
        run = _held_run(db, run_id, token)
        if run.status in TERMINAL:
            raise ValueError(f"run {run_id} is already {run.status}")
        setattr(run, status_column(sub_task), status)
        if error:
            errors = json.loads(run.errors_json or "[]")
            errors.append(error)
            run.errors_json = json.dumps(errors)
        run.updated_ts = now()
        db.commit()
    finally:
        db.close()

def refresh_progress(run_id: str) -> Dict[str, int]:
    """
    Recount item progress. An item is processed once every enabled check on
    it is terminal, and successful if none of them failed.
    """
    db: Session = SessionLocal()
    try:
        run = _held_run(db, run_id, None)
        subs = enabled_sub_tasks(run)
        processed = successful = failed = 0
        for item in db.query(BatchRunItem).filter(BatchRunItem.batch_run_id == run_id).all():
            statuses = [getattr(item, status_column(s)) for s in subs]
            if all(st in TERMINAL for st in statuses):
                processed += 1
                if FAILED in statuses:
                    failed += 1
                else:
                    successful += 1
        if run.status not in TERMINAL:
            run.processed_items = processed
            run.successful_items = successful
            run.failed_items = failed
            run.updated_ts = now()
        db.commit()
        return {"processed_items": processed, "successful_items": successful, "failed_items": failed}
    finally:
        db.close()

def mark_run_terminal(
    run_id: str,
    status: str,
    error_summary: str | None,
    token: str | None = None,
    *,
    actual_credits_used: int | None = None,
    refunded_credits: int | None = None,
) -> bool:
    """
    Move a run to completed/failed. Conditional on the run not being terminal
    yet (and on `token` still holding the claim), so it succeeds exactly once.
    """
    if status not in TERMINAL:
        raise ValueError(f"not a terminal status: {status}")
    ts = now()
    values: Dict[str, Any] = {
        "status": status,
        "error_message": error_summary,
        "completed_ts": ts,
        "updated_ts": ts,
        "claim_token": None,
        "claimed_ts": None,
        "active_tenant_id": None,
    }
    if actual_credits_used is not None:
        values["actual_credits_used"] = int(actual_credits_used)
    if refunded_credits is not None:
        values["refunded_credits"] = int(refunded_credits)

    conds = [BatchRun.run_id == run_id, BatchRun.status.notin_(TERMINAL)]
    if token is not None:
        conds.append(BatchRun.claim_token == token)

    db: Session = SessionLocal()
    try:
        done = db.execute(
            update(BatchRun).where(*conds).values(**values).execution_options(synchronize_session=False)
        ).rowcount == 1
        db.commit()
    finally:
        db.close()

    if done:
        logger.info("Run %s -> %s%s", run_id, status, f" ({error_summary})" if error_summary else "")
    else:
        logger.info("Run %s already terminal or claim lost, %s not applied", run_id, status)
    return done

# ----------------------------
# dict views
# ----------------------------
def run_to_dict(r: BatchRun) -> Dict[str, Any]:
    return {
        "run_id": r.run_id,
        "tenant_id": r.tenant_id,
        "status": r.status,
        "feature_type": r.feature_type,
        "providers": json.loads(r.providers_json or "[]"),
        "sub_tasks": {s: getattr(r, status_column(s)) for s in enabled_sub_tasks(r)},
        "total_items": r.total_items,
        "processed_items": r.processed_items,
        "successful_items": r.successful_items,
        "failed_items": r.failed_items,
        "estimated_credits": r.estimated_credits,
        "actual_credits_used": r.actual_credits_used,
        "refunded_credits": r.refunded_credits,
        "idempotency_key": r.idempotency_key,
        "triggered_by": r.triggered_by,
        "errors": json.loads(r.errors_json or "[]"),
        "error_message": r.error_message,
        "claimed": r.claim_token is not None,
        "scheduled_for_ts": r.scheduled_for_ts,
        "created_ts": r.created_ts,
        "started_ts": r.started_ts,
        "completed_ts": r.completed_ts,
    }

def item_to_dict(r: BatchRunItem) -> Dict[str, Any]:
    return {
        "item_id": r.item_id,
        "batch_run_id": r.batch_run_id,
        "position": r.position,
        "reference_id": r.reference_id,
        "reference_type": r.reference_type,
        "payload": json.loads(r.payload_json or "{}"),
        "statuses": {s: getattr(r, status_column(s)) for s in SUB_TASKS if getattr(r, status_column(s)) is not None},
        "retries": json.loads(r.retries_json or "{}"),
        "result": json.loads(r.result_json or "{}"),
        "errors": json.loads(r.errors_json or "{}"),
    }
