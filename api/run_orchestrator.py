"""
Resumable batch-run state machine.

Everything the orchestrator knows about a run is read back from the
run/item status columns at the start of each pass, so any process can pick
a run up where the previous pass stopped. One pass works at most `budget`
item checks and then releases its claim.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List

from api import credit_service
from api.config import ITEMS_PER_EXECUTION, MAX_ITEM_RETRIES
from api.errors import ClaimLost
from db import batch_db
from db.batch_db import RunClaim
from db.models import COMPLETED, FAILED, PENDING, PROCESSING, TERMINAL
from sdk.check_base import CheckResult
from sdk.check_registry import CHECK_IMPLS
from sdk.providers import ProviderRegistry, registry as default_registry

logger = logging.getLogger(__name__)

def _first_error(run_id: str, sub_task: str) -> str:
    for item in batch_db.list_items(run_id):
        err = item["errors"].get(sub_task)
        if err and item["statuses"].get(sub_task) == FAILED:
            return err
    return "unknown error"

def _run_check(runner, ctx: Dict[str, Any], item: Dict[str, Any]) -> CheckResult:
    try:
        return runner.run(ctx, item["payload"])
    except Exception as e:
        logger.exception("Runner %s raised on item %s", runner.meta.sub_task, item["item_id"])
        return CheckResult(ok=False, metric={}, error=f"{type(e).__name__}: {e}")

def _record_outcome(claim: RunClaim, sub_task: str, item: Dict[str, Any], res: CheckResult) -> None:
    item_id = item["item_id"]
    tries = item["retries"].get(sub_task, 0)
    if res.ok:
        batch_db.update_item_status(item_id, sub_task, COMPLETED, result=res.metric, token=claim.token)
    elif res.retryable and tries < MAX_ITEM_RETRIES:
        logger.warning("Run %s %s item %s: transient failure, retry %d/%d: %s",
                       claim.run_id, sub_task, item_id, tries + 1, MAX_ITEM_RETRIES, res.error)
        batch_db.update_item_status(item_id, sub_task, PENDING, error=res.error, retry=True, token=claim.token)
    else:
        logger.warning("Run %s %s item %s failed: %s", claim.run_id, sub_task, item_id, res.error)
        batch_db.update_item_status(item_id, sub_task, FAILED, error=res.error or "check failed", token=claim.token)

def _resolve_sub_task(claim: RunClaim, sub_task: str) -> bool:
    """Close the sub-task if no item check is left. Returns True once it is terminal."""
    counts = batch_db.sub_task_counts(claim.run_id, sub_task)
    if counts[PENDING] or counts[PROCESSING]:
        return False
    total = counts[COMPLETED] + counts[FAILED]
    if counts[FAILED]:
        error = f"{sub_task}: {counts[FAILED]} of {total} checks failed ({_first_error(claim.run_id, sub_task)})"
        batch_db.set_sub_task_status(claim.run_id, sub_task, FAILED, claim.token, error=error)
    else:
        batch_db.set_sub_task_status(claim.run_id, sub_task, COMPLETED, claim.token)
    logger.info("Run %s sub-task %s resolved: %d ok, %d failed", claim.run_id, sub_task, counts[COMPLETED], counts[FAILED])
    return True

def _finalize(claim: RunClaim, run: Dict[str, Any]) -> str:
    """
    Failed runs with no successful item check at all are refunded in full.
    Partially successful runs keep their charge. The refund is written before
    the terminal transition; a retry after a crash in between replays it.
    """
    errors: List[str] = run["errors"]
    status = FAILED if errors else COMPLETED
    successful_checks = sum(batch_db.sub_task_counts(run["run_id"], s)[COMPLETED] for s in run["sub_tasks"])

    estimated = int(run["estimated_credits"] or 0)
    refunded, used = 0, estimated
    if status == FAILED and successful_checks == 0 and estimated > 0:
        credit_service.refund_feature(
            run["tenant_id"],
            estimated,
            run["idempotency_key"],
            feature_type=run["feature_type"],
            feature_metadata={"run_id": run["run_id"], "reason": "all checks failed"},
            description=f"Refund for failed batch run {run['run_id']}",
        )
        refunded, used = estimated, 0
        logger.info("Run %s failed with no successful checks, refunded %d credits", run["run_id"], estimated)

    batch_db.mark_run_terminal(
        run["run_id"], status, "; ".join(errors) or None, claim.token,
        actual_credits_used=used, refunded_credits=refunded,
    )
    return status

def process_run(claim: RunClaim, budget: int = ITEMS_PER_EXECUTION, registry: ProviderRegistry | None = None) -> Dict[str, Any]:
    run = batch_db.get_run(claim.run_id)
    if run is None:
        raise ValueError(f"batch run not found: {claim.run_id}")
    if run["status"] in TERMINAL:
        batch_db.release_claim(claim)
        return {"processed_run_id": claim.run_id, "status": run["status"], "errors": run["errors"], "checks_attempted": 0}

    attempted = 0
    try:
        batch_db.recover_claimed_run(claim)
        ctx = {
            "tenant_id": run["tenant_id"],
            "run_id": run["run_id"],
            "providers": run["providers"],
            "registry": registry or default_registry,
        }

        for sub_task, sub_status in run["sub_tasks"].items():
            if sub_status in TERMINAL:
                continue
            if attempted >= budget:
                break
            if sub_status == PENDING:
                batch_db.set_sub_task_status(claim.run_id, sub_task, PROCESSING, claim.token)

            runner = CHECK_IMPLS[sub_task]()
            while attempted < budget:
                items = batch_db.pending_items(claim.run_id, sub_task, limit=budget - attempted)
                if not items:
                    break
                for item in items:
                    batch_db.update_item_status(item["item_id"], sub_task, PROCESSING, token=claim.token)
                    res = _run_check(runner, ctx, item)
                    attempted += 1
                    _record_outcome(claim, sub_task, item, res)
                    batch_db.refresh_progress(claim.run_id)

            if not _resolve_sub_task(claim, sub_task):
                break

        run = batch_db.get_run(claim.run_id)
        if all(st in TERMINAL for st in run["sub_tasks"].values()):
            status = _finalize(claim, run)
        else:
            batch_db.release_claim(claim)
            status = run["status"]
            logger.info("Run %s paused after %d checks, will resume on the next pass", claim.run_id, attempted)
    except ClaimLost:
        logger.warning("Run %s: claim taken over by another pass, stopping", claim.run_id)
        run = batch_db.get_run(claim.run_id)
        return {"processed_run_id": claim.run_id, "status": run["status"], "errors": run["errors"], "checks_attempted": attempted}
    except Exception:
        logger.exception("Run %s: orchestration aborted", claim.run_id)
        batch_db.release_claim(claim)
        raise

    run = batch_db.get_run(claim.run_id)
    return {"processed_run_id": claim.run_id, "status": status, "errors": run["errors"], "checks_attempted": attempted}
