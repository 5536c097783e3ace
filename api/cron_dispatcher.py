"""
Cron entry point for batch runs.

An external scheduler calls this once a minute. Each call sweeps abandoned
claims, claims at most one run and gives it a single bounded orchestrator
pass. Overlapping calls are harmless: a run with a live claim is skipped.
"""
from __future__ import annotations
import json
import logging
from typing import Any, Dict

from api.run_orchestrator import process_run
from db import batch_db, cron_log_db
from db.ledger_db import now
from sdk.providers import ProviderRegistry

logger = logging.getLogger(__name__)

JOB_NAME = "process-batch-runs"
NO_WORK = {"message": "No pending batch runs to process"}

def dispatch_once(ts: int | None = None, registry: ProviderRegistry | None = None) -> Dict[str, Any]:
    ts = ts if ts is not None else now()
    execution_id = cron_log_db.start_execution(JOB_NAME)
    try:
        swept = batch_db.sweep_stuck_runs(ts)
        claim = batch_db.claim_oldest_pending(ts)
        if claim is None:
            cron_log_db.finish_execution(execution_id, True, {**NO_WORK, "sweep": swept})
            return dict(NO_WORK)

        result = process_run(claim, registry=registry)
        out = {
            "processed_run_id": result["processed_run_id"],
            "status": result["status"],
            "errors": result["errors"],
        }
        cron_log_db.finish_execution(execution_id, True, {**out, "checks_attempted": result["checks_attempted"], "sweep": swept})
        return out
    except Exception as e:
        logger.exception("Cron dispatch failed")
        cron_log_db.finish_execution(execution_id, False, error=f"{type(e).__name__}: {e}")
        raise

if __name__ == "__main__":
    from api.config import LOG_LEVEL
    from api.logging_config import init_logging
    from db.init_db import main as init_db

    init_logging(LOG_LEVEL)
    init_db()
    print(json.dumps(dispatch_once(), indent=2))
